from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from api.integrations.panel.errors import KeyNotFoundError, ProvisioningError
from api.utils import db
from api.utils.db import PersistenceError, User
from api.utils.logging import get_logger
from api.utils.payments import (
    KEY_MISSING_TEXT,
    REGISTER_FIRST_TEXT,
    UnregisteredUserError,
    format_expiry,
)

logger = get_logger("keys")

REGISTERED_TEXT = "Вы зарегистрированы! Ваш ID в системе: {user_id}"
REGISTER_FAILED_TEXT = "Не удалось зарегистрироваться. Попробуйте позже"
KEY_ISSUED_TEXT = "Ваш новый ключ: {key_id}\nДействителен до {expires}"
KEY_ISSUE_FAILED_TEXT = "Не удалось создать ключ. Попробуйте позже"
KEY_ACTIVE_TEXT = "Ключ активен до {expires}"
KEY_UNLIMITED_TEXT = "Ключ активен без ограничения срока"
STATUS_FAILED_TEXT = "Не удалось получить статус. Попробуйте позже"


class KeyProvisioner(Protocol):
    async def create_key(self, subscriber_ref: int | str) -> str:
        ...

    async def query_expiry(self, key_id: str) -> datetime | None:
        ...


class KeyService:
    """Registration and self-service key commands."""

    def __init__(
        self,
        *,
        provisioning: KeyProvisioner,
        store: Any = db,
        key_days: int = 30,
        timeout: float | None = 30.0,
    ) -> None:
        self._provisioning = provisioning
        self._store = store
        self._key_days = key_days
        self._timeout = timeout

    async def register(self, telegram_id: int, username: str | None) -> str:
        try:
            user = await asyncio.to_thread(self._store.upsert_user, telegram_id, username)
        except PersistenceError:
            logger.exception("Failed to register user", extra={"telegram_id": telegram_id})
            return REGISTER_FAILED_TEXT
        return REGISTERED_TEXT.format(user_id=user.id)

    async def _require_user(self, telegram_id: int) -> User:
        user = await asyncio.to_thread(self._store.get_user_by_handle, telegram_id)
        if user is None:
            raise UnregisteredUserError(f"user {telegram_id} is not registered")
        return user

    async def issue_key(self, telegram_id: int) -> str:
        """Create a key on the panel and remember it for the user."""

        key_id: str | None = None
        try:
            async with asyncio.timeout(self._timeout):
                user = await self._require_user(telegram_id)
                key_id = await self._provisioning.create_key(user.id)
                # Mirrors the validity the panel was asked for.
                expires_at = datetime.now(UTC).replace(microsecond=0) + timedelta(days=self._key_days)
                await asyncio.to_thread(self._store.set_user_key, user.id, key_id, expires_at)
        except UnregisteredUserError:
            return REGISTER_FIRST_TEXT
        except (ProvisioningError, TimeoutError):
            logger.exception("Failed to create key", extra={"telegram_id": telegram_id})
            return KEY_ISSUE_FAILED_TEXT
        except PersistenceError:
            logger.exception(
                "Failed to store issued key", extra={"telegram_id": telegram_id, "key_id": key_id}
            )
            return KEY_ISSUE_FAILED_TEXT

        logger.info("Issued key", extra={"user_id": user.id, "key_id": key_id})
        return KEY_ISSUED_TEXT.format(key_id=key_id, expires=format_expiry(expires_at))

    async def key_status(self, telegram_id: int) -> str:
        try:
            async with asyncio.timeout(self._timeout):
                user = await self._require_user(telegram_id)
                if not user.has_key:
                    return KEY_MISSING_TEXT
                expires_at = await self._provisioning.query_expiry(user.key_id)
        except UnregisteredUserError:
            return REGISTER_FIRST_TEXT
        except KeyNotFoundError:
            return KEY_MISSING_TEXT
        except (ProvisioningError, PersistenceError, TimeoutError):
            logger.exception("Failed to query key status", extra={"telegram_id": telegram_id})
            return STATUS_FAILED_TEXT

        if expires_at is None:
            return KEY_UNLIMITED_TEXT
        return KEY_ACTIVE_TEXT.format(expires=format_expiry(expires_at))


__all__ = ["KeyService"]
