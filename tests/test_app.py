"""App factory, configuration and CLI tests."""

import logging

import pytest

from fulfillment import build_fulfillment, create_app, get_engine
from fulfillment.config import Config
from fulfillment.errors import NotFound
from fulfillment.store import MemoryEntityStore
from tests.conftest import seed_catalog


def test_config_defaults():
    assert Config.FULFILLMENT_RETRY_ATTEMPTS == 3
    assert Config.SQLALCHEMY_TRACK_MODIFICATIONS is False


def test_memory_backend_is_the_default():
    app = create_app({"TESTING": True})
    engine = get_engine(app)
    assert isinstance(engine.store, MemoryEntityStore)
    assert engine.orders.store is engine.store
    assert engine.catalog.store is engine.store
    assert engine.orders.attempts == app.config["FULFILLMENT_RETRY_ATTEMPTS"]
    assert engine.store.default_timeout == app.config["FULFILLMENT_SCOPE_TIMEOUT"]


def test_overrides_reach_services():
    app = create_app({
        "TESTING": True,
        "FULFILLMENT_RETRY_ATTEMPTS": 7,
        "FULFILLMENT_RETRY_BACKOFF": 0,
        "FULFILLMENT_FORCE_PRODUCT_LOCKS": True,
    })
    engine = get_engine(app)
    assert engine.orders.attempts == 7
    assert engine.catalog.backoff_base == 0
    assert engine.lock_registry is not None


def test_get_engine_uses_current_app():
    app = create_app({"TESTING": True})
    with app.app_context():
        assert get_engine() is get_engine(app)


def test_engine_without_app_has_bounded_scopes():
    engine = build_fulfillment(MemoryEntityStore(detect_conflicts=False))
    assert engine.orders.scope_timeout == Config.FULFILLMENT_SCOPE_TIMEOUT
    assert engine.catalog.scope_timeout == Config.FULFILLMENT_SCOPE_TIMEOUT
    assert engine.orders.scope_timeout is not None


def test_unknown_backend_is_rejected():
    with pytest.raises(ValueError):
        create_app({"FULFILLMENT_STORE_BACKEND": "redis"})


def test_log_level_is_applied():
    create_app({"TESTING": True, "FULFILLMENT_LOG_LEVEL": "debug"})
    assert logging.getLogger("fulfillment").level == logging.DEBUG
    with pytest.raises(ValueError):
        create_app({"FULFILLMENT_LOG_LEVEL": "chatty"})


def test_operations_log_at_info(caplog):
    app = create_app({"TESTING": True, "FULFILLMENT_RETRY_BACKOFF": 0})
    engine = get_engine(app)
    seed = seed_catalog(engine.catalog)
    with caplog.at_level(logging.INFO, logger="fulfillment"):
        order_id = engine.orders.place_order(seed.user_id, [{"product_id": seed.product_a, "quantity": 1}])
    assert any(order_id in record.getMessage() for record in caplog.records)


# =============================================================================
# CLI
# =============================================================================

def test_cli_ledger_verify(sql_app):
    seed_catalog(get_engine(sql_app).catalog)
    result = sql_app.test_cli_runner().invoke(args=["ledger", "verify"])
    assert result.exit_code == 0
    assert "Ledger consistent" in result.output


def test_cli_stock_adjust_and_show(sql_app):
    seed = seed_catalog(get_engine(sql_app).catalog)
    runner = sql_app.test_cli_runner()

    result = runner.invoke(args=["stock", "adjust", seed.product_b, "--delta", "5", "--reason", "purchase"])
    assert result.exit_code == 0, result.output
    assert get_engine(sql_app).catalog.get_on_hand(seed.product_b) == 15

    result = runner.invoke(args=["stock", "show", seed.product_b])
    assert result.exit_code == 0
    assert "on_hand=15" in result.output
    assert "purchase" in result.output


def test_cli_stock_adjust_reports_errors(sql_app):
    seed = seed_catalog(get_engine(sql_app).catalog)
    result = sql_app.test_cli_runner().invoke(args=["stock", "adjust", seed.product_c, "--delta", "-5"])
    assert result.exit_code != 0
    assert "Insufficient stock" in result.output


def test_cli_store_commands_need_sql_backend():
    app = create_app({"TESTING": True})
    result = app.test_cli_runner().invoke(args=["store", "init"])
    assert result.exit_code != 0
    assert "FULFILLMENT_STORE_BACKEND=sql" in result.output


def test_cli_reset_db(sql_app):
    seed = seed_catalog(get_engine(sql_app).catalog)
    result = sql_app.test_cli_runner().invoke(args=["store", "reset-db", "--yes"])
    assert result.exit_code == 0, result.output
    with pytest.raises(NotFound):
        get_engine(sql_app).catalog.get_product(seed.product_a)
