# tests/test_core.py

from storefront.core.logging_config import build_logging_config
from storefront.db.session import engine_options


def test_chatty_libraries_log_warnings_only():
    loggers = build_logging_config("debug")["loggers"]

    for name in ("httpx", "aiogram", "apscheduler"):
        assert loggers[name]["level"] == "WARNING"
        assert loggers[name]["propagate"] is False
    assert loggers["storefront"]["level"] == "DEBUG"


def test_sqlite_sessions_may_cross_threads():
    assert engine_options("sqlite:///storefront.db")["connect_args"]["check_same_thread"] is False
    assert "connect_args" not in engine_options("postgresql+psycopg2://u:p@db/storefront")
