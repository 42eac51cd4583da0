import io
import json
import logging

import pytest
from hub_core import logging_setup as ls


@pytest.fixture
def captured():
    buf = io.StringIO()
    handler = ls.JsonRedactingHandler(buf)
    log = logging.getLogger("hub_core.test_capture")
    log.addHandler(handler)
    log.setLevel(logging.DEBUG)
    log.propagate = False
    yield log, buf
    log.removeHandler(handler)


def test_dict_messages_emitted_as_json(captured):
    log, buf = captured
    log.info({"event": "ble_connected", "device_id": "AA"})
    line = json.loads(buf.getvalue().strip())
    assert line["event"] == "ble_connected"
    assert line["level"] == "INFO"
    assert line["logger"] == "hub_core.test_capture"


def test_secret_keys_scrubbed(captured):
    log, buf = captured
    log.info({"event": "mqtt_connect_attempt", "password": "hunter2"})
    out = buf.getvalue()
    assert "hunter2" not in out
    assert "REDACTED" in out


def test_plain_messages_redacted(captured):
    log, buf = captured
    log.warning("connecting with password=hunter2 to broker")
    out = buf.getvalue()
    assert "hunter2" not in out
    assert out.startswith("WARNING hub_core.test_capture:")


def test_redact_helper():
    assert ls.redact("token: abc123") == "token=***REDACTED***"


@pytest.mark.parametrize(
    "env,expected",
    [("DEBUG", logging.DEBUG), ("warning", logging.WARNING), ("bogus", logging.INFO)],
)
def test_level_from_env(monkeypatch, env, expected):
    monkeypatch.delenv("LOGGING_LEVEL", raising=False)
    monkeypatch.delenv("HUB_LOG_LEVEL", raising=False)
    monkeypatch.setenv("LOG_LEVEL", env)
    assert ls.get_log_level() == expected


def test_override_beats_env(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    assert ls.get_log_level("debug") == logging.DEBUG


def test_setup_logging_applies_level():
    try:
        assert ls.setup_logging("WARNING") == logging.WARNING
        assert ls.logger.level == logging.WARNING
        assert ls.ble_logger.getEffectiveLevel() == logging.WARNING
    finally:
        ls.setup_logging(logging.INFO)


def test_single_json_handler_on_hub_logger():
    ls.setup_logging(logging.INFO)
    json_handlers = [h for h in ls.logger.handlers if isinstance(h, ls.JsonRedactingHandler)]
    assert len(json_handlers) == 1
    assert ls.logger.propagate is False


def test_setup_logging_ignores_foreign_handlers():
    foreign = logging.NullHandler()
    ls.logger.addHandler(foreign)
    try:
        ls.setup_logging("debug")
        ls.setup_logging("info")
        json_handlers = [h for h in ls.logger.handlers if isinstance(h, ls.JsonRedactingHandler)]
        assert len(json_handlers) == 1
        assert json_handlers[0].level == logging.INFO
        assert foreign.level == logging.NOTSET
    finally:
        ls.logger.removeHandler(foreign)
