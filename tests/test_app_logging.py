from __future__ import annotations

import logging

import app
import settings
from core.models import Notice


def test_redacting_formatter_masks_secrets() -> None:
    formatter = app._RedactingFormatter(["secret-token"], fmt="%(message)s")
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "auth=secret-token", None, None)

    assert formatter.format(record) == "auth=***"


def test_redacting_formatter_ignores_short_values() -> None:
    formatter = app._RedactingFormatter(["J", "Bearer-abcdef"], fmt="%(message)s")
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "Judge J sent Bearer-abcdef", None, None)

    assert formatter.format(record) == "Judge J sent ***"


def test_redaction_values_come_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("REGISTRY_ACCESS_TOKEN", "abc123")
    config = {"redact": {"enabled": True, "patterns": ["REGISTRY_ACCESS_TOKEN", "UNSET_VARIABLE"]}}

    assert app._collect_redaction_values(config) == ["abc123"]
    assert app._collect_redaction_values({"redact": {"enabled": False}}) == []


def test_notice_sink_maps_levels(caplog) -> None:
    sink = app.LoggingNoticeSink(logging.getLogger("registry.notices.test"))

    with caplog.at_level(logging.INFO, logger="registry.notices.test"):
        sink.notify(Notice("warning", "Live updates are unavailable"))
        sink.notify(Notice("odd", "falls back to info"))

    assert [record.levelno for record in caplog.records] == [logging.WARNING, logging.INFO]


def test_settings_expose_messaging_config() -> None:
    assert settings.MESSAGING.history_limit > 0
    assert settings.MESSAGING.reconcile_window_seconds > 0
    partial = settings.build_messaging_config({"history_limit": "25"})
    assert partial.history_limit == 25
    assert partial.history_timeout_seconds == 15.0
