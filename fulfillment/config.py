# fulfillment/config.py
from __future__ import annotations
import os


class Config:
    # SQLite DB used when the sql backend is selected
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///fulfillment.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # "memory" (reference store) or "sql" (SQLAlchemy-backed store)
    FULFILLMENT_STORE_BACKEND = os.environ.get("FULFILLMENT_STORE_BACKEND", "memory")

    # Conflict/Timeout retry policy for coordinator operations
    FULFILLMENT_RETRY_ATTEMPTS = int(os.environ.get("FULFILLMENT_RETRY_ATTEMPTS", "3"))
    FULFILLMENT_RETRY_BACKOFF = float(os.environ.get("FULFILLMENT_RETRY_BACKOFF", "0.05"))

    # Seconds a scope may stay open before commit fails with Timeout
    FULFILLMENT_SCOPE_TIMEOUT = float(os.environ.get("FULFILLMENT_SCOPE_TIMEOUT", "5.0"))

    # Acquire per-product locks even when the store detects write conflicts
    FULFILLMENT_FORCE_PRODUCT_LOCKS = os.environ.get("FULFILLMENT_FORCE_PRODUCT_LOCKS", "0") == "1"

    FULFILLMENT_LOG_LEVEL = os.environ.get("FULFILLMENT_LOG_LEVEL", "INFO")
