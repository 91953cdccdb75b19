# Overview: Flask CLI command groups for store bootstrap, stock and ledger inspection.

# Commands Legend:
# Prereqs:
# - Set FLASK_APP to "fulfillment:create_app" and FULFILLMENT_STORE_BACKEND=sql
#   for a persistent database (the memory backend lives for one command only).
# - Use: python -m flask <group> <command> [options]
#
# Store bootstrap:
# - python -m flask store init
#   Create all tables (idempotent).
# - python -m flask store reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock:
# - python -m flask stock show <product_id>
#   Print on_hand and the net movement per reason.
# - python -m flask stock adjust <product_id> --delta 5 --reason purchase
#   Book a non-order stock movement.
#
# Ledger:
# - python -m flask ledger verify
#   List products whose on_hand disagrees with their movement history.

import click
from flask.cli import with_appcontext

from .errors import FulfillmentError
from .models.entities import MOVEMENT_REASONS, REASON_SALE
from .store import SqlEntityStore


def _engine():
    from . import get_engine
    return get_engine()


def _sql_store() -> SqlEntityStore:
    store = _engine().store
    if not isinstance(store, SqlEntityStore):
        raise click.ClickException("This command needs FULFILLMENT_STORE_BACKEND=sql")
    return store


@click.group('store')
def store_group():
    """Store bootstrap and repair commands."""


@store_group.command('init')
@with_appcontext
def init_store():
    """Create all tables."""
    _sql_store().create_schema()
    click.echo("PASS Schema ready.")


@store_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    store = _sql_store()
    click.echo("DELETE  Dropping all tables...")
    store.drop_schema()

    click.echo("BUILD  Creating all tables...")
    store.create_schema()

    click.echo("PASS Database reset complete.")


@click.group('stock')
def stock_group():
    """Inspect and adjust product stock."""


@stock_group.command('show')
@click.argument('product_id')
@with_appcontext
def show_stock(product_id):
    catalog = _engine().catalog
    try:
        on_hand = catalog.get_on_hand(product_id)
        summary = catalog.movement_summary(product_id)
    except FulfillmentError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"{product_id}: on_hand={on_hand}")
    for reason in MOVEMENT_REASONS:
        if reason in summary:
            click.echo(f"  {reason:<12} {summary[reason]:+d}")


@stock_group.command('adjust')
@click.argument('product_id')
@click.option('--delta', type=int, required=True, help='Signed quantity')
@click.option(
    '--reason',
    type=click.Choice([r for r in MOVEMENT_REASONS if r != REASON_SALE]),
    default='adjustment',
    show_default=True,
)
@with_appcontext
def adjust_stock(product_id, delta, reason):
    try:
        movement_id = _engine().orders.adjust_stock(product_id, delta, reason)
    except FulfillmentError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"PASS Movement {movement_id} booked.")


@click.group('ledger')
def ledger_group():
    """Inventory ledger consistency checks."""


@ledger_group.command('verify')
@with_appcontext
def verify_ledger():
    drift = _engine().catalog.verify_ledger()
    if not drift:
        click.echo("PASS Ledger consistent.")
        return
    for product_id in drift:
        click.echo(f"FAIL {product_id}")
    raise click.ClickException(f"{len(drift)} products out of balance")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(store_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(ledger_group)
