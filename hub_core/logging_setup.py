import atexit
import json
import logging
import os
import re
import sys

# Expanded redaction pattern
REDACT = re.compile(
    r"(?i)[\"']?\b(pass(word)?|token|apikey|api_key|secret|bearer)\b[\"']?\s*[:=]\s*[\"']?([^\"',\s]+)[\"']?"
)

# Keys stripped from structured (dict) log payloads before serialization.
SECRET_KEYS = frozenset({"password", "token", "mqtt_password", "secret"})


def redact(s: str) -> str:
    return REDACT.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)


def _scrub(msg: dict) -> dict:
    return {
        k: ("***REDACTED***" if str(k).lower() in SECRET_KEYS else v)
        for k, v in msg.items()
    }


class JsonRedactingHandler(logging.StreamHandler):
    """Emit dict messages as JSON lines and plain messages as text, secrets redacted."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = record.msg
            if isinstance(msg, dict):
                payload = {"level": record.levelname, "logger": record.name}
                payload.update(_scrub(msg))
                line = json.dumps(payload, default=str)
            else:
                line = f"{record.levelname} {record.name}: {record.getMessage()}"
            if record.exc_info:
                line = f"{line}\n{logging.Formatter().formatException(record.exc_info)}"
            line = redact(line)
            stream = self.stream if hasattr(self, "stream") else sys.stdout
            stream.write(line + "\n")
            self.flush()
        except Exception:
            self.handleError(record)


LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_log_level(override: str | None = None) -> int:
    """Resolve log level from an override or the environment.

    Checks, in order: override, LOG_LEVEL, LOGGING_LEVEL, HUB_LOG_LEVEL and
    falls back to logging.INFO for invalid or missing values.
    """
    if override:
        return LOG_LEVEL_MAP.get(str(override).upper(), logging.INFO)
    lvl = (
        os.environ.get("LOG_LEVEL")
        or os.environ.get("LOGGING_LEVEL")
        or os.environ.get("HUB_LOG_LEVEL")
    )
    if not lvl:
        return logging.INFO
    return LOG_LEVEL_MAP.get(str(lvl).upper(), logging.INFO)


# Structured loggers: one tree, handler on the root of the tree only.
logger = logging.getLogger("hub_core")
ble_logger = logger.getChild("ble")
bridge_logger = logger.getChild("bridge")

handler = JsonRedactingHandler(sys.stdout)
logger.handlers.clear()  # Deduplicate handlers on re-import
logger.addHandler(handler)
logger.setLevel(get_log_level())
logger.propagate = False


def setup_logging(level: str | int | None = None) -> int:
    """(Re)initialize the hub logger; returns the numeric level applied."""
    numeric_level = level if isinstance(level, int) else get_log_level(level)
    logger.setLevel(numeric_level)
    ours = [h for h in logger.handlers if isinstance(h, JsonRedactingHandler)]
    if not ours:
        ours = [JsonRedactingHandler(sys.stdout)]
        logger.addHandler(ours[0])
    for h in ours:
        h.setLevel(numeric_level)
    return numeric_level


def _flush_all_log_handlers():
    """Flush hub handlers, skipping streams that are already closed."""
    for h in list(logger.handlers):
        stream = getattr(h, "stream", None)
        if getattr(stream, "closed", False) is True:
            continue
        try:
            h.flush()
        except (OSError, ValueError):
            continue


atexit.register(_flush_all_log_handlers)


__all__ = [
    "LOG_LEVEL_MAP",
    "JsonRedactingHandler",
    "ble_logger",
    "bridge_logger",
    "get_log_level",
    "logger",
    "redact",
    "setup_logging",
]
