"""Application logging helpers.

Modules log ``<scope>-event key=value ...`` lines (``session-event``,
``agent-event``, ``backend-event`` and so on).
``EventFormatter`` lifts the scope into its own column so a log file can be
filtered per subsystem, and masks credential fields before they are written.
"""

from __future__ import annotations

import logging as py_logging
import re
import sys
from pathlib import Path
from typing import TextIO

LOG_LEVELS = {
    "DEBUG": py_logging.DEBUG,
    "INFO": py_logging.INFO,
    "WARN": py_logging.WARNING,
    "WARNING": py_logging.WARNING,
    "ERROR": py_logging.ERROR,
}
EVENT_SCOPES = ("session", "agent", "server", "model", "backend", "capture", "cli")
SECRET_FIELDS = ("password", "passphrase", "private_key", "api_key", "token")
REDACTED = "***"
DEFAULT_LOG_PATH = Path("~/.config/shellpilot/logs/shellpilot.log")
_FALLBACK_LOG_PATH = Path(".shellpilot/logs/shellpilot.log")
_FORMAT = "%(asctime)s %(levelname)s [%(event_scope)s] %(name)s:%(lineno)d %(message)s"
_EVENT_PREFIX = re.compile(r"^(?P<scope>[a-z]+)-event\s+")
_SECRET_VALUE = re.compile(r"\b(?P<key>\w*(?:" + "|".join(SECRET_FIELDS) + r"))=(?P<value>\S+)")


def event_scope(message: str) -> str:
    """Scope of an ``<scope>-event`` message, ``-`` for free-form lines."""
    match = _EVENT_PREFIX.match(message)
    if match is None or match.group("scope") not in EVENT_SCOPES:
        return "-"
    return match.group("scope")


def redact_secrets(message: str) -> str:
    return _SECRET_VALUE.sub(lambda match: f"{match.group('key')}={REDACTED}", message)


class EventFormatter(py_logging.Formatter):
    def __init__(self, fmt: str = _FORMAT) -> None:
        super().__init__(fmt)

    def format(self, record: py_logging.LogRecord) -> str:
        message = record.getMessage()
        record.event_scope = event_scope(message)
        rendered = super().format(record)
        return redact_secrets(rendered)


def default_log_path() -> Path:
    try:
        resolved = DEFAULT_LOG_PATH.expanduser()
    except RuntimeError:
        resolved = (Path.cwd() / _FALLBACK_LOG_PATH).resolve()
    else:
        if not resolved.is_absolute():
            resolved = resolved.resolve()
    return resolved


def _resolve_level(level: str) -> int:
    normalized = level.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    return LOG_LEVELS.get(normalized, py_logging.INFO)


def configure_logging(
    level: str = "INFO",
    stream: TextIO | None = None,
    *,
    log_file: str | Path | None = None,
) -> py_logging.Logger:
    resolved = _resolve_level(level)

    logger = py_logging.getLogger("shellpilot")
    logger.setLevel(resolved)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    formatter = EventFormatter()

    handler = py_logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(resolved)
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    if log_file:
        try:
            log_path = Path(log_file).expanduser()
        except RuntimeError:
            log_path = Path(log_file)
        if not log_path.is_absolute():
            log_path = log_path.resolve()
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = py_logging.FileHandler(log_path, encoding="utf-8")
        except OSError:
            pass
        else:
            # The file keeps debug detail whatever the console level is.
            file_handler.setLevel(py_logging.DEBUG)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger
