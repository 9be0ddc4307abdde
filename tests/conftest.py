from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

ADMIN_TOKEN = "admin-secret"


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV_PATH", str(tmp_path / "missing.env"))
    monkeypatch.setenv("BOT_TOKEN", "123456:TESTTOKEN")
    monkeypatch.setenv("ADMIN_TOKEN", ADMIN_TOKEN)

    from api.utils import db

    database_path = tmp_path / "keybot.db"
    monkeypatch.setenv("DATABASE", str(database_path))
    monkeypatch.setattr(db, "DB_PATH", database_path)
    db.init_db()

    yield
