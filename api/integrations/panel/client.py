"""Async client for the key provisioning panel."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from api.integrations.panel.auth import PanelAuth, SessionArtifact, build_panel_auth
from api.integrations.panel.errors import (
    AuthExhaustedError,
    KeyNotFoundError,
    ProvisioningError,
    ProvisioningTimeoutError,
)
from api.utils.logging import get_logger

logger = get_logger("integrations.panel")

ADD_CLIENT_PATH = "xui/inbound/addClient"
UPDATE_CLIENT_PATH = "xui/inbound/updateClient"
DELETE_CLIENT_PATH = "xui/inbound/delClient"
CLIENT_TRAFFIC_PATH = "xui/inbound/getClientTraffics"

DEFAULT_KEY_DAYS = 30
DEFAULT_DEVICE_LIMIT = 1


@dataclass(slots=True)
class PanelResponse:
    success: bool
    msg: str
    obj: Any
    raw: dict[str, Any]


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def _expiry_after(days: int) -> datetime:
    return _utcnow() + timedelta(days=days)


def _to_unix(value: datetime) -> int:
    return int(value.timestamp())


class ProvisioningClient:
    """Create, extend, delete and inspect keys on the provisioning panel.

    The session artifact is owned by the client. Every request carries the
    current artifact; an HTTP 401 triggers a single re-login followed by a
    single retry of the original request. Re-logins are serialised with a lock
    and a request that raced with another caller's re-login reuses the fresh
    artifact instead of logging in again.
    """

    def __init__(
        self,
        base_url: str,
        auth: PanelAuth,
        *,
        timeout: float = 15.0,
        key_days: int = DEFAULT_KEY_DAYS,
        device_limit: int = DEFAULT_DEVICE_LIMIT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ProvisioningError("panel_url_missing")
        self._base_url = base_url.rstrip("/") + "/"
        self._auth = auth
        self._key_days = key_days
        self._device_limit = device_limit
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            transport=transport,
            trust_env=False,
        )
        self._session: SessionArtifact | None = None
        self._generation = 0
        self._session_lock = asyncio.Lock()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ProvisioningClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # === Session handling ===

    async def authenticate(self) -> None:
        """Obtain a session eagerly, for example at start-up."""

        async with self._session_lock:
            await self._login_locked()

    async def _login_locked(self) -> None:
        artifact = await self._auth.login(self._client)
        self._session = artifact
        self._generation += 1
        logger.info(
            "Provisioning panel session refreshed",
            extra={"kind": artifact.kind, "generation": self._generation},
        )

    async def _current_session(self) -> tuple[SessionArtifact | None, int]:
        async with self._session_lock:
            if self._session is None:
                await self._login_locked()
            return self._session, self._generation

    async def _refresh_session(self, stale_generation: int) -> None:
        async with self._session_lock:
            if self._generation != stale_generation:
                logger.debug(
                    "Session already refreshed by another request",
                    extra={"generation": self._generation},
                )
                return
            await self._login_locked()

    # === Transport ===

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> PanelResponse:
        session, generation = await self._current_session()
        response = await self._send_once(method, path, session, json=json, params=params)

        if response.status_code == httpx.codes.UNAUTHORIZED:
            logger.info(
                "Provisioning panel session expired; re-authenticating",
                extra={"path": path},
            )
            await self._refresh_session(generation)
            session, _ = await self._current_session()
            response = await self._send_once(method, path, session, json=json, params=params)
            if response.status_code == httpx.codes.UNAUTHORIZED:
                logger.error("Provisioning panel still unauthorized after re-login", extra={"path": path})
                raise AuthExhaustedError("panel_unauthorized")

        return self._parse(response, path)

    async def _send_once(
        self,
        method: str,
        path: str,
        session: SessionArtifact | None,
        *,
        json: dict[str, Any] | None,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        request = self._client.build_request(method, self._base_url + path, json=json, params=params)
        if session is not None:
            session.apply(request)
        try:
            return await self._client.send(request)
        except httpx.TimeoutException as exc:
            logger.exception("Provisioning panel request timed out", extra={"path": path})
            raise ProvisioningTimeoutError("panel_timeout") from exc
        except httpx.HTTPError as exc:
            logger.exception(
                "Provisioning panel request failed", extra={"path": path, "error": str(exc)}
            )
            raise ProvisioningError("panel_request_failed") from exc

    @staticmethod
    def _parse(response: httpx.Response, path: str) -> PanelResponse:
        if response.status_code >= 300:
            logger.error(
                "Provisioning panel returned HTTP error",
                extra={"path": path, "status_code": response.status_code, "body": response.text[:500]},
            )
            raise ProvisioningError(f"panel_http_error: {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            logger.exception("Provisioning panel returned invalid JSON", extra={"path": path})
            raise ProvisioningError("panel_invalid_json") from exc
        if not isinstance(data, dict):
            logger.error("Unexpected provisioning panel payload", extra={"path": path})
            raise ProvisioningError("panel_invalid_response")
        return PanelResponse(
            success=bool(data.get("success")),
            msg=str(data.get("msg") or ""),
            obj=data.get("obj"),
            raw=data,
        )

    # === Operations ===

    async def create_key(self, subscriber_ref: int | str) -> str:
        """Create a key for ``subscriber_ref`` and return its identifier."""

        expires_at = _expiry_after(self._key_days)
        payload = {
            "id": subscriber_ref,
            "email": f"user-{subscriber_ref}",
            "limitIp": self._device_limit,
            "totalGB": 0,
            "expiryTime": _to_unix(expires_at),
            "enable": True,
        }
        result = await self._send("POST", ADD_CLIENT_PATH, json=payload)
        if not result.success:
            logger.error(
                "Panel refused to create key",
                extra={"subscriber": subscriber_ref, "panel_msg": result.msg},
            )
            raise ProvisioningError(f"panel error: {result.msg}")

        key_id = result.obj.get("id") if isinstance(result.obj, dict) else None
        if not key_id:
            logger.error("Panel response is missing the key id", extra={"subscriber": subscriber_ref})
            raise ProvisioningError("panel_key_id_missing")
        logger.info("Created key", extra={"subscriber": subscriber_ref, "key_id": key_id})
        return str(key_id)

    async def extend_key(self, key_id: str, days: int) -> datetime:
        """Set the key expiry to ``now + days`` and return the new expiry.

        The previous expiry is discarded, not added to.
        """

        expires_at = _expiry_after(days)
        payload = {"id": key_id, "expiryTime": _to_unix(expires_at), "operation": "update"}
        result = await self._send("POST", UPDATE_CLIENT_PATH, json=payload)
        if not result.success:
            logger.error("Panel refused to extend key", extra={"key_id": key_id, "panel_msg": result.msg})
            raise ProvisioningError(f"panel error: {result.msg}")
        logger.info(
            "Extended key",
            extra={"key_id": key_id, "days": days, "expires_at": expires_at.isoformat()},
        )
        return expires_at

    async def delete_key(self, key_id: str) -> None:
        result = await self._send("POST", DELETE_CLIENT_PATH, json={"id": key_id})
        if not result.success:
            logger.warning("Panel refused to delete key", extra={"key_id": key_id, "panel_msg": result.msg})
            raise ProvisioningError(f"panel error: {result.msg}")
        logger.info("Deleted key", extra={"key_id": key_id})

    async def query_expiry(self, key_id: str) -> datetime | None:
        """Return the key expiry, or ``None`` when the panel reports no limit."""

        result = await self._send("GET", CLIENT_TRAFFIC_PATH, params={"id": key_id})
        entries = result.obj if isinstance(result.obj, list) else []
        if not result.success or not entries:
            logger.warning("Key not found on panel", extra={"key_id": key_id, "panel_msg": result.msg})
            raise KeyNotFoundError(f"client not found: {result.msg}")

        entry = entries[0] if isinstance(entries[0], dict) else {}
        try:
            expiry = int(entry.get("expiryTime") or 0)
        except (TypeError, ValueError) as exc:
            raise ProvisioningError("panel_invalid_expiry") from exc
        if expiry <= 0:
            return None
        # Some panel builds report milliseconds.
        if expiry > 10**11:
            expiry //= 1000
        return datetime.fromtimestamp(expiry, UTC)


def build_provisioning_client() -> ProvisioningClient:
    """Return a client configured from the environment."""

    from api import config

    base_url = config.require_env("PANEL_URL")
    auth = build_panel_auth(
        config.PANEL_AUTH_MODE,
        base_url=base_url,
        username=config.PANEL_USERNAME,
        password=config.PANEL_PASSWORD,
        token=config.PANEL_TOKEN,
    )
    return ProvisioningClient(
        base_url,
        auth,
        timeout=config.PANEL_TIMEOUT_SECONDS,
        key_days=config.KEY_VALIDITY_DAYS,
        device_limit=config.KEY_DEVICE_LIMIT,
    )


__all__ = ["PanelResponse", "ProvisioningClient", "build_provisioning_client"]
