from __future__ import annotations

import logging
import sys

from mkey_exporter.core.logging import _ContainerFormatter, _JsonFormatter, setup_logging


def _record(level: int, msg: str, *, filename: str = "refresh.py", lineno: int = 1):
    return logging.LogRecord(
        name="mkey_exporter.services.refresh",
        level=level,
        pathname=filename,
        lineno=lineno,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_setup_logging_sets_root_level() -> None:
    setup_logging("debug")
    assert logging.getLogger().level == logging.DEBUG

    setup_logging("warning")
    assert logging.getLogger().level == logging.WARNING


def test_setup_logging_defaults_to_info_for_unknown_level() -> None:
    setup_logging("nonexistent")
    assert logging.getLogger().level == logging.INFO


def test_setup_logging_replaces_handlers() -> None:
    setup_logging("info")
    setup_logging("info")
    assert len(logging.getLogger().handlers) == 1


def test_setup_logging_picks_json_formatter() -> None:
    setup_logging("info", json_format=True)
    (handler,) = logging.getLogger().handlers
    assert isinstance(handler.formatter, _JsonFormatter)


def test_setup_logging_quiets_third_parties_at_debug() -> None:
    setup_logging("debug")
    assert logging.getLogger("uvicorn").level == logging.WARNING
    assert logging.getLogger("asyncio").level == logging.WARNING


def test_setup_logging_allows_uvicorn_at_error() -> None:
    setup_logging("error")
    assert logging.getLogger("uvicorn.access").level == logging.ERROR


def test_formatter_excludes_location_for_info() -> None:
    output = _ContainerFormatter().format(_record(logging.INFO, "Refreshed 10 keys"))
    assert "Refreshed 10 keys" in output
    assert "[refresh.py:" not in output


def test_formatter_includes_location_for_warning() -> None:
    output = _ContainerFormatter().format(
        _record(logging.WARNING, "Failed to fetch key metadata", lineno=42)
    )
    assert "Failed to fetch key metadata" in output
    assert "[refresh.py:42]" in output


def test_formatter_timestamp_has_milliseconds() -> None:
    output = _ContainerFormatter().format(_record(logging.INFO, "tick"))
    timestamp = output.split(" ", 1)[0]
    # 2024-01-01T00:00:00.123Z
    assert timestamp[19] == "."
    assert timestamp[20:23].isdigit()
    assert timestamp.endswith("Z")


def test_formatter_appends_host_and_rule_group() -> None:
    record = _record(logging.INFO, "Reconciled label sets")
    record.host = "cache-1:11211"
    record.rule_group = "default"
    record.keys = 5120
    output = _ContainerFormatter().format(record)
    assert output.endswith("Reconciled label sets  host=cache-1:11211  rule_group=default")


def test_formatter_puts_traceback_after_location() -> None:
    try:
        raise RuntimeError("sink exploded")
    except RuntimeError:
        record = _record(logging.ERROR, "Unexpected error publishing keys", lineno=7)
        record.exc_info = sys.exc_info()
    first, *rest = _ContainerFormatter().format(record).splitlines()
    assert first.endswith("[refresh.py:7]")
    assert rest[-1] == "RuntimeError: sink exploded"
