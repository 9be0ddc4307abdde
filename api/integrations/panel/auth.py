"""Authentication strategies for the provisioning panel."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import httpx

from api.integrations.panel.errors import PanelLoginError
from api.utils.logging import get_logger

logger = get_logger("integrations.panel.auth")

SESSION_COOKIE_NAME = "session"


@dataclass(frozen=True, slots=True)
class SessionArtifact:
    """Proof of authentication attached to every panel request."""

    kind: str
    value: str
    name: str = SESSION_COOKIE_NAME

    def apply(self, request: httpx.Request) -> None:
        if self.kind == "bearer":
            request.headers["Authorization"] = f"Bearer {self.value}"
        else:
            request.headers["Cookie"] = f"{self.name}={self.value}"


class PanelAuth(Protocol):
    async def login(self, client: httpx.AsyncClient) -> SessionArtifact:
        ...


class CookieSessionAuth:
    """Log in with username and password and keep the returned session cookie."""

    def __init__(self, base_url: str, username: str, password: str) -> None:
        if not (base_url and username and password):
            raise PanelLoginError("panel_credentials_missing")
        self._login_url = base_url.rstrip("/") + "/login"
        self._username = username
        self._password = password

    async def login(self, client: httpx.AsyncClient) -> SessionArtifact:
        logger.info("Logging in to provisioning panel", extra={"url": self._login_url})
        try:
            response = await client.post(
                self._login_url,
                json={"username": self._username, "password": self._password},
            )
        except httpx.HTTPError as exc:
            logger.exception("Panel login request failed", extra={"error": str(exc)})
            raise PanelLoginError("panel_login_request_failed") from exc

        if response.status_code >= 300:
            logger.error("Panel login rejected", extra={"status_code": response.status_code})
            raise PanelLoginError(f"panel_login_failed: {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("success") is False:
            logger.error("Panel login returned failure", extra={"panel_msg": payload.get("msg")})
            raise PanelLoginError("panel_login_failed")

        cookies = list(response.cookies.jar)
        if not cookies:
            logger.error("Panel login response did not carry a session cookie")
            raise PanelLoginError("panel_session_cookie_missing")

        for cookie in cookies:
            if cookie.name == SESSION_COOKIE_NAME and cookie.value:
                return SessionArtifact(kind="cookie", value=cookie.value, name=cookie.name)

        # Some panel builds use a different cookie name; take the first one.
        first = cookies[0]
        logger.debug("Using fallback session cookie", extra={"cookie": first.name})
        return SessionArtifact(kind="cookie", value=first.value or "", name=first.name)


class StaticTokenAuth:
    """Authenticate with a pre-issued bearer token."""

    def __init__(self, token: str) -> None:
        if not token:
            raise PanelLoginError("panel_token_missing")
        self._token = token

    async def login(self, client: httpx.AsyncClient) -> SessionArtifact:
        _ = client
        return SessionArtifact(kind="bearer", value=self._token)


def build_panel_auth(
    mode: str,
    *,
    base_url: str | None,
    username: str | None = None,
    password: str | None = None,
    token: str | None = None,
) -> PanelAuth:
    """Return the authentication strategy selected by configuration."""

    normalised = (mode or "").strip().lower()
    if normalised in {"session", "cookie", "login"}:
        return CookieSessionAuth(base_url or "", username or "", password or "")
    if normalised in {"token", "bearer"}:
        return StaticTokenAuth(token or "")
    raise RuntimeError(f"Неизвестный режим авторизации панели: {mode!r}")


__all__ = [
    "CookieSessionAuth",
    "PanelAuth",
    "PanelLoginError",
    "SessionArtifact",
    "StaticTokenAuth",
    "build_panel_auth",
]
