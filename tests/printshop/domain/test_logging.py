"""Tests for logging configuration helpers."""

import pytest
import structlog
from printshop.utils.logging import get_log_level, get_logger, order_context


def test_log_level_follows_environment(monkeypatch):
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("ENV", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.setenv("PROTEAN_ENV", "production")
    assert get_log_level() == "INFO"

    monkeypatch.setenv("PROTEAN_ENV", "test")
    assert get_log_level() == "WARNING"


def test_explicit_log_level_wins(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    assert get_log_level() == "ERROR"


class TestOrderContext:
    def setup_method(self):
        structlog.contextvars.clear_contextvars()

    def test_binds_order_keys_inside_the_block(self):
        with order_context("ord-1", change="submit", actor="ops"):
            assert structlog.contextvars.get_contextvars() == {
                "order_id": "ord-1",
                "change": "submit",
                "actor": "ops",
            }
        assert structlog.contextvars.get_contextvars() == {}

    def test_outer_context_survives(self):
        structlog.contextvars.bind_contextvars(request_id="req-9")
        with order_context("ord-1", change="copy_bundle", item_id="item-3"):
            assert structlog.contextvars.get_contextvars()["item_id"] == "item-3"
        assert structlog.contextvars.get_contextvars() == {"request_id": "req-9"}
        structlog.contextvars.clear_contextvars()

    def test_context_is_restored_when_the_write_fails(self):
        with pytest.raises(RuntimeError):
            with order_context("ord-1", change="submit"):
                raise RuntimeError("boom")
        assert structlog.contextvars.get_contextvars() == {}


def test_get_logger_returns_a_logger():
    assert get_logger("printshop.tests") is not None
