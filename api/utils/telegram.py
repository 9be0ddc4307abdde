from __future__ import annotations

import os

import httpx

from api.utils.logging import get_logger

BASE = os.getenv("BASE_BOT_URL", "https://api.telegram.org")
logger = get_logger("utils.telegram")


class TelegramDeliveryError(RuntimeError):
    pass


def _url(method: str) -> str:
    token = os.getenv("BOT_TOKEN")
    if not token:
        logger.error("Cannot call Telegram: BOT_TOKEN is not configured")
        raise TelegramDeliveryError("telegram_token_missing")
    return f"{BASE}/bot{token}/{method}"


async def send_message(chat_id: int | str, text: str, parse_mode: str | None = None):
    logger.info("Sending Telegram message", extra={"chat_id": chat_id})
    url = _url("sendMessage")
    async with httpx.AsyncClient(timeout=30) as client:
        data = {"chat_id": chat_id, "text": text}
        if parse_mode:
            data["parse_mode"] = parse_mode
        r = await client.post(url, json=data)
        r.raise_for_status()
        logger.debug("Telegram API response", extra={"chat_id": chat_id, "status_code": r.status_code})
        return r.json()


__all__ = ["TelegramDeliveryError", "send_message"]
