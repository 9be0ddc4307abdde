from __future__ import annotations

import importlib
import sys

import pytest


def reload_config(monkeypatch, **env):
    for key in ("OPERATOR_IDS", "ADMIN_IDS", "PANEL_URL", "RENEWAL_DAYS", "RENEWAL_NOTIFICATION_HOUR"):
        monkeypatch.delenv(key, raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    sys.modules.pop("api.config", None)
    return importlib.import_module("api.config")


def test_defaults(monkeypatch):
    module = reload_config(monkeypatch)

    assert module.OPERATOR_IDS == frozenset()
    assert module.PANEL_URL is None
    assert module.PANEL_AUTH_MODE == "session"
    assert module.KEY_VALIDITY_DAYS == 30
    assert module.RENEWAL_DAYS == 30
    assert module.KEY_DEVICE_LIMIT == 1
    assert module.RENEWAL_NOTIFICATION_HOUR == 9


def test_operator_ids_and_inline_comments(monkeypatch):
    module = reload_config(
        monkeypatch,
        OPERATOR_IDS="10, 20,,30  # support team",
        PANEL_URL="https://panel.example/base",
        RENEWAL_DAYS="31 # month",
    )

    assert module.OPERATOR_IDS == frozenset({10, 20, 30})
    assert module.PANEL_URL == "https://panel.example/base/"
    assert module.RENEWAL_DAYS == 31


def test_admin_ids_are_accepted_as_operator_ids(monkeypatch):
    module = reload_config(monkeypatch, ADMIN_IDS="7")

    assert module.OPERATOR_IDS == frozenset({7})


@pytest.mark.parametrize(
    "env",
    [
        {"OPERATOR_IDS": "ten"},
        {"RENEWAL_DAYS": "thirty"},
        {"RENEWAL_NOTIFICATION_HOUR": "25"},
    ],
)
def test_invalid_values_raise(monkeypatch, env):
    with pytest.raises(RuntimeError):
        reload_config(monkeypatch, **env)


def test_require_env(monkeypatch):
    module = reload_config(monkeypatch)
    monkeypatch.setenv("PANEL_TOKEN", "abc # comment")

    assert module.require_env("PANEL_TOKEN") == "abc"
    with pytest.raises(RuntimeError):
        module.require_env("PANEL_URL")
