from __future__ import annotations

import asyncio

import httpx
import pytest

from api.integrations.panel.auth import (
    CookieSessionAuth,
    SessionArtifact,
    StaticTokenAuth,
    build_panel_auth,
)
from api.integrations.panel.errors import PanelLoginError


def _login(auth, handler):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await auth.login(client)

    return asyncio.run(scenario())


def test_cookie_login_prefers_session_cookie():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(
            200,
            json={"success": True},
            headers=[("Set-Cookie", "lang=ru; Path=/"), ("Set-Cookie", "session=abc; Path=/")],
        )

    artifact = _login(CookieSessionAuth("https://panel.test/base/", "admin", "pw"), handler)

    assert artifact == SessionArtifact(kind="cookie", value="abc", name="session")
    assert str(captured[0].url) == "https://panel.test/base/login"


def test_cookie_login_falls_back_to_first_cookie():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": True}, headers={"Set-Cookie": "3x-ui=xyz; Path=/"})

    artifact = _login(CookieSessionAuth("https://panel.test/", "admin", "pw"), handler)

    assert artifact.name == "3x-ui"
    assert artifact.value == "xyz"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401),
        httpx.Response(200, json={"success": False, "msg": "wrong password"}),
        httpx.Response(200, json={"success": True}),
    ],
)
def test_cookie_login_failures(response):
    with pytest.raises(PanelLoginError):
        _login(CookieSessionAuth("https://panel.test/", "admin", "pw"), lambda request: response)


def test_cookie_login_requires_credentials():
    with pytest.raises(PanelLoginError):
        CookieSessionAuth("https://panel.test/", "admin", "")


def test_session_artifact_applies_headers():
    request = httpx.Request("GET", "https://panel.test/x")
    SessionArtifact(kind="cookie", value="abc").apply(request)
    assert request.headers["Cookie"] == "session=abc"

    request = httpx.Request("GET", "https://panel.test/x")
    SessionArtifact(kind="bearer", value="tok").apply(request)
    assert request.headers["Authorization"] == "Bearer tok"


def test_build_panel_auth_selects_strategy():
    session = build_panel_auth("Session", base_url="https://panel.test/", username="u", password="p")
    token = build_panel_auth("token", base_url=None, token="t")

    assert isinstance(session, CookieSessionAuth)
    assert isinstance(token, StaticTokenAuth)
    with pytest.raises(RuntimeError):
        build_panel_auth("kerberos", base_url="https://panel.test/")
