from __future__ import annotations

import os

from dotenv import load_dotenv

from api.utils.logging import get_logger
from api.utils.env import resolve_env_path

logger = get_logger("config")

_ENV_PATH = resolve_env_path()

if _ENV_PATH.exists():
    load_dotenv(str(_ENV_PATH), override=True)
    logger.info("Loaded environment variables from file", extra={"path": str(_ENV_PATH)})
else:
    logger.warning(
        ".env file is missing; relying on existing environment variables",
        extra={"path": str(_ENV_PATH)},
    )


def require_env(name: str) -> str:
    """Return the value of an environment variable or raise an error."""

    value = _strip_inline_comment(os.getenv(name) or "")
    if not value:
        logger.error(
            "Required environment variable is missing",
            extra={"env_name": name},
        )
        raise RuntimeError(
            "Переменная окружения {name} не задана. "
            "Создайте файл {env} или установите переменную в окружении."
            .format(name=name, env=_ENV_PATH)
        )
    logger.debug("Loaded environment variable", extra={"env_name": name})
    return value


def _strip_inline_comment(raw: str) -> str:
    """Remove inline shell-style comments from a value string."""

    comment_pos = raw.find("#")
    if comment_pos == -1:
        return raw.strip()
    return raw[:comment_pos].strip()


def _read_str(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    cleaned = _strip_inline_comment(raw)
    return cleaned or default


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        cleaned = _strip_inline_comment(raw)
        if cleaned == "":
            return default
        value = int(cleaned)
    except ValueError as exc:
        logger.error(
            "Failed to parse int from env",
            extra={"env_name": name, "env_value": raw},
        )
        raise RuntimeError(f"Переменная окружения {name} должна быть целым числом") from exc
    return value


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        cleaned = _strip_inline_comment(raw)
        if cleaned == "":
            return default
        value = float(cleaned)
    except ValueError as exc:
        logger.error(
            "Failed to parse float from env",
            extra={"env_name": name, "env_value": raw},
        )
        raise RuntimeError(f"Переменная окружения {name} должна быть числом") from exc
    return value


def _parse_id_list(raw: str | None) -> frozenset[int]:
    if not raw:
        return frozenset()
    ids: set[int] = set()
    for chunk in _strip_inline_comment(raw).split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            ids.add(int(chunk))
        except ValueError as exc:
            raise RuntimeError(f"Некорректный идентификатор оператора: {chunk!r}") from exc
    return frozenset(ids)


def _normalise_base_url(raw: str | None) -> str | None:
    if not raw:
        return None
    return raw.rstrip("/") + "/"


BOT_TOKEN = _read_str("BOT_TOKEN")
OPERATOR_IDS = _parse_id_list(os.getenv("OPERATOR_IDS") or os.getenv("ADMIN_IDS"))
ADMIN_TOKEN = _read_str("ADMIN_TOKEN")

PANEL_URL = _normalise_base_url(_read_str("PANEL_URL"))
PANEL_AUTH_MODE = (_read_str("PANEL_AUTH_MODE", "session") or "session").lower()
PANEL_USERNAME = _read_str("PANEL_USERNAME")
PANEL_PASSWORD = os.getenv("PANEL_PASSWORD")
PANEL_TOKEN = _read_str("PANEL_TOKEN")
PANEL_TIMEOUT_SECONDS = _parse_float("PANEL_TIMEOUT_SECONDS", 15.0)

KEY_VALIDITY_DAYS = _parse_int("KEY_VALIDITY_DAYS", 30)
RENEWAL_DAYS = _parse_int("RENEWAL_DAYS", 30)
KEY_DEVICE_LIMIT = _parse_int("KEY_DEVICE_LIMIT", 1)
REQUEST_TIMEOUT_SECONDS = _parse_float("REQUEST_TIMEOUT_SECONDS", 30.0)

RENEWAL_NOTIFICATION_HOUR = _parse_int("RENEWAL_NOTIFICATION_HOUR", 9)
RENEWAL_LOOKAHEAD_HOURS = _parse_float("RENEWAL_LOOKAHEAD_HOURS", 24.0)

if not 0 <= RENEWAL_NOTIFICATION_HOUR <= 23:
    raise RuntimeError("RENEWAL_NOTIFICATION_HOUR должен быть в диапазоне 0-23")

logger.info(
    "Configuration loaded",
    extra={
        "OPERATORS": len(OPERATOR_IDS),
        "PANEL_URL": PANEL_URL,
        "PANEL_AUTH_MODE": PANEL_AUTH_MODE,
        "KEY_VALIDITY_DAYS": KEY_VALIDITY_DAYS,
        "RENEWAL_DAYS": RENEWAL_DAYS,
        "RENEWAL_NOTIFICATION_HOUR": RENEWAL_NOTIFICATION_HOUR,
    },
)


__all__ = [
    "require_env",
    "BOT_TOKEN",
    "OPERATOR_IDS",
    "ADMIN_TOKEN",
    "PANEL_URL",
    "PANEL_AUTH_MODE",
    "PANEL_USERNAME",
    "PANEL_PASSWORD",
    "PANEL_TOKEN",
    "PANEL_TIMEOUT_SECONDS",
    "KEY_VALIDITY_DAYS",
    "RENEWAL_DAYS",
    "KEY_DEVICE_LIMIT",
    "REQUEST_TIMEOUT_SECONDS",
    "RENEWAL_NOTIFICATION_HOUR",
    "RENEWAL_LOOKAHEAD_HOURS",
]
