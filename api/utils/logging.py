"""Central logging configuration for the VPN key bot.

Both processes (the Telegram bot and the admin service) log under the
``vpn_keybot`` root logger into a rotating file plus stderr. Context passed
through ``extra={...}`` is appended to each line as ``key=value`` pairs.
"""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_ROOT_LOGGER = "vpn_keybot"
_DEFAULT_LOG_LEVEL = os.getenv("KEYBOT_LOG_LEVEL", "INFO").upper()
_DEFAULT_LOG_DIR = Path(
    os.getenv("KEYBOT_LOG_DIR", Path(__file__).resolve().parents[2] / "logs")
)
_DEFAULT_LOG_FILE = os.getenv("KEYBOT_LOG_FILE", "keybot.log")

_DEFAULT_FORMAT = (
    "%(asctime)s | %(levelname)s | %(name)s:%(lineno)d | %(message)s"
)

# Attributes every LogRecord carries; anything else came from ``extra``.
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if not context:
            return base
        rendered = " ".join(f"{key}={value!r}" for key, value in sorted(context.items()))
        return f"{base} | {rendered}"


def _build_handlers() -> list[logging.Handler]:
    formatter = ContextFormatter(_DEFAULT_FORMAT)

    _DEFAULT_LOG_DIR.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        _DEFAULT_LOG_DIR / _DEFAULT_LOG_FILE,
        maxBytes=int(os.getenv("KEYBOT_LOG_MAX_BYTES", 5 * 1024 * 1024)),
        backupCount=int(os.getenv("KEYBOT_LOG_BACKUP_COUNT", 5)),
        encoding="utf-8",
    )
    stream_handler = logging.StreamHandler()

    for handler in (file_handler, stream_handler):
        handler.setFormatter(formatter)
    return [file_handler, stream_handler]


def configure_logging(level: Optional[str] = None) -> None:
    """Attach handlers to the project root logger; later calls are no-ops."""

    root = logging.getLogger(_ROOT_LOGGER)
    if root.handlers:
        return

    root.setLevel(level or _DEFAULT_LOG_LEVEL)
    for handler in _build_handlers():
        root.addHandler(handler)
    root.propagate = False


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(_ROOT_LOGGER).getChild(name)


__all__ = ["ContextFormatter", "configure_logging", "get_logger"]
