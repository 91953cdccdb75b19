# Overview: Canonical UTC timestamps for entity records.

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
