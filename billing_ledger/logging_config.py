"""
Logging setup for the billing ledger.

Services log through `get_logger(__name__)`; applications call
`configure_logging` once to attach a handler to the package logger.
"""

import logging
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Optional

_LOGGER_PREFIX = "billing_ledger"

# Attributes present on every LogRecord; anything else came in through `extra`
_STDLIB_KEYS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


class KeyValueFormatter(logging.Formatter):
    """Formats a record as one line of key=value pairs, extra fields last."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            f"ts={datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()}",
            f"level={record.levelname}",
            f"logger={record.name}",
            f"message={_quote(record.getMessage())}",
        ]

        for key, value in sorted(vars(record).items()):
            if key not in _STDLIB_KEYS:
                parts.append(f"{key}={_quote(str(value))}")

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            parts.append(f"exc_type={type(exc).__name__}")
            if hasattr(exc, "code"):
                parts.append(f"exc_code={exc.code}")
            return " ".join(parts) + "\n" + self.formatException(record.exc_info)

        return " ".join(parts)


def _quote(value: str) -> str:
    if not value or any(ch.isspace() for ch in value) or "=" in value:
        return '"' + value.replace('"', '\\"') + '"'
    return value


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the billing_ledger namespace."""
    if name == _LOGGER_PREFIX or name.startswith(_LOGGER_PREFIX + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    level: Any = logging.INFO,
    stream: Any = None,
    handler: Optional[logging.Handler] = None
) -> None:
    """Configure the billing_ledger logger hierarchy (idempotent).

    Args:
        level: Level name ("INFO") or number
        stream: Stream for the default handler, stderr when omitted
        handler: Handler to install instead of a stream handler
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    package_logger = logging.getLogger(_LOGGER_PREFIX)
    package_logger.setLevel(level)
    package_logger.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(KeyValueFormatter())
    package_logger.addHandler(h)


def reset_logging() -> None:
    """Reset logging configuration. For tests only."""
    global _configured
    with _lock:
        _configured = False
    package_logger = logging.getLogger(_LOGGER_PREFIX)
    package_logger.handlers.clear()
    package_logger.setLevel(logging.NOTSET)
    package_logger.propagate = True
