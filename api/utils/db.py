from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from api.utils.logging import get_logger

BASE_DIR = Path(os.getenv("APP_ROOT", Path(__file__).resolve().parents[2]))
DEFAULT_DB = BASE_DIR / "keybot.db"
DB_PATH = Path(os.getenv("DATABASE", DEFAULT_DB))
DB_TIMEOUT_SECONDS = float(os.getenv("DATABASE_TIMEOUT_SECONDS", "10"))

logger = get_logger("db")
T = TypeVar("T")


class PersistenceError(RuntimeError):
    """Raised when the SQLite store fails to read or write a record."""


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


@dataclass(slots=True)
class User:
    id: int
    telegram_id: int
    username: str | None
    key_id: str | None
    expires_at: datetime | None
    status: str

    @property
    def has_key(self) -> bool:
        return self.key_id is not None


@dataclass(slots=True)
class Payment:
    id: int
    user_id: int
    proof_ref: str
    status: PaymentStatus
    comment: str | None
    created_at: datetime

    @property
    def is_pending(self) -> bool:
        return self.status is PaymentStatus.PENDING


INIT_SQL = """
CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  telegram_id INTEGER NOT NULL UNIQUE,
  username TEXT,
  key_id TEXT,
  expires_at TEXT,
  status TEXT NOT NULL DEFAULT 'new',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  CHECK ((key_id IS NULL) = (expires_at IS NULL))
);

CREATE TABLE IF NOT EXISTS payments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id INTEGER NOT NULL REFERENCES users(id),
  proof_ref TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  comment TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  CHECK (status IN ('pending', 'confirmed', 'rejected')),
  CHECK ((status = 'rejected') = (comment IS NOT NULL))
);
"""

INDEX_SQL = (
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_users_telegram_id ON users(telegram_id)",
    "CREATE INDEX IF NOT EXISTS idx_users_expires ON users(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_payments_user ON payments(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_payments_status ON payments(status)",
)


@contextmanager
def connect(*, autocommit: bool = True, db_path: Path | str | None = None) -> Iterator[sqlite3.Connection]:
    resolved = Path(db_path or DB_PATH)
    logger.debug("Opening SQLite connection", extra={"path": str(resolved)})
    con = sqlite3.connect(resolved, timeout=DB_TIMEOUT_SECONDS)
    con.row_factory = sqlite3.Row
    try:
        yield con
        if autocommit:
            con.commit()
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()


def init_db(*, db_path: Path | str | None = None) -> None:
    resolved = Path(db_path or DB_PATH)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Ensuring SQLite schema exists", extra={"path": str(resolved)})
    with connect(db_path=resolved) as con:
        con.executescript(INIT_SQL)
        for statement in INDEX_SQL:
            con.execute(statement)
    logger.info("Database initialisation complete", extra={"path": str(resolved)})


def _run(operation: Callable[[], T], *, action: str) -> T:
    """Run ``operation`` translating SQLite failures into ``PersistenceError``.

    A missing table means the schema was never created for this file; it is
    created once and the operation retried.
    """

    try:
        try:
            return operation()
        except sqlite3.OperationalError as exc:
            if "no such table" not in str(exc).lower():
                raise
            logger.warning(
                "Missing SQLite table detected; reinitialising schema",
                extra={"error": str(exc), "path": str(DB_PATH)},
            )
            init_db()
            return operation()
    except sqlite3.Error as exc:
        logger.exception("SQLite operation failed", extra={"action": action})
        raise PersistenceError(f"{action}_failed") from exc


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_db_time(value: datetime) -> str:
    return _ensure_utc(value).replace(microsecond=0).isoformat()


def _from_db_time(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return _ensure_utc(datetime.fromisoformat(raw))


def _row_to_user(row: sqlite3.Row | None) -> User | None:
    if row is None:
        return None
    return User(
        id=row["id"],
        telegram_id=row["telegram_id"],
        username=row["username"],
        key_id=row["key_id"],
        expires_at=_from_db_time(row["expires_at"]),
        status=row["status"],
    )


def _row_to_payment(row: sqlite3.Row | None) -> Payment | None:
    if row is None:
        return None
    return Payment(
        id=row["id"],
        user_id=row["user_id"],
        proof_ref=row["proof_ref"],
        status=PaymentStatus(row["status"]),
        comment=row["comment"],
        created_at=_from_db_time(row["created_at"]) or _utcnow(),
    )


# === Users ===


def upsert_user(telegram_id: int, username: str | None) -> User:
    now = _utcnow().isoformat()

    def _operation() -> User:
        with connect() as con:
            con.execute(
                """
                INSERT INTO users (telegram_id, username, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(telegram_id)
                DO UPDATE SET username=excluded.username, updated_at=excluded.updated_at
                """,
                (telegram_id, username, now, now),
            )
            row = con.execute("SELECT * FROM users WHERE telegram_id=?", (telegram_id,)).fetchone()
        return _row_to_user(row)

    user = _run(_operation, action="upsert_user")
    logger.info("Stored Telegram user", extra={"user_id": user.id, "telegram_id": telegram_id})
    return user


def get_user_by_handle(telegram_id: int) -> User | None:
    def _operation() -> User | None:
        with connect() as con:
            row = con.execute("SELECT * FROM users WHERE telegram_id=?", (telegram_id,)).fetchone()
        return _row_to_user(row)

    return _run(_operation, action="get_user_by_handle")


def get_user_by_id(user_id: int) -> User | None:
    def _operation() -> User | None:
        with connect() as con:
            row = con.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
        return _row_to_user(row)

    return _run(_operation, action="get_user_by_id")


def set_user_key(user_id: int, key_id: str, expires_at: datetime) -> None:
    if not key_id or expires_at is None:
        raise ValueError("key_id and expires_at must be set together")
    expires_iso = _to_db_time(expires_at)
    now = _utcnow().isoformat()

    def _operation() -> int:
        with connect() as con:
            cur = con.execute(
                "UPDATE users SET key_id=?, expires_at=?, status='active', updated_at=? WHERE id=?",
                (key_id, expires_iso, now, user_id),
            )
            return cur.rowcount

    updated = _run(_operation, action="set_user_key")
    if not updated:
        raise PersistenceError("user_not_found")
    logger.info(
        "Updated user key",
        extra={"user_id": user_id, "key_id": key_id, "expires_at": expires_iso},
    )


def list_users_expiring_between(start: datetime, end: datetime) -> list[User]:
    """Return users with a key whose expiry falls into ``[start, end)``."""

    start_iso = _to_db_time(start)
    end_iso = _to_db_time(end)

    def _operation() -> list[User]:
        with connect() as con:
            rows = con.execute(
                """
                SELECT * FROM users
                WHERE key_id IS NOT NULL AND expires_at >= ? AND expires_at < ?
                ORDER BY expires_at ASC
                """,
                (start_iso, end_iso),
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    return _run(_operation, action="list_users_expiring_between")


def list_users_expiring_within(days: int) -> list[User]:
    now = _utcnow()
    return list_users_expiring_between(now, now + timedelta(days=days))


def count_users(*, with_key: bool = False) -> int:
    query = "SELECT COUNT(*) FROM users"
    if with_key:
        query += " WHERE key_id IS NOT NULL"

    def _operation() -> int:
        with connect() as con:
            return int(con.execute(query).fetchone()[0])

    return _run(_operation, action="count_users")


# === Payments ===


def create_payment(user_id: int, proof_ref: str) -> Payment:
    now = _utcnow().isoformat()

    def _operation() -> Payment:
        with connect() as con:
            cur = con.execute(
                """
                INSERT INTO payments (user_id, proof_ref, status, created_at, updated_at)
                VALUES (?, ?, 'pending', ?, ?)
                """,
                (user_id, proof_ref, now, now),
            )
            row = con.execute("SELECT * FROM payments WHERE id=?", (cur.lastrowid,)).fetchone()
        return _row_to_payment(row)

    payment = _run(_operation, action="create_payment")
    logger.info("Created payment", extra={"payment_id": payment.id, "user_id": user_id})
    return payment


def get_payment(payment_id: int) -> Payment | None:
    def _operation() -> Payment | None:
        with connect() as con:
            row = con.execute("SELECT * FROM payments WHERE id=?", (payment_id,)).fetchone()
        return _row_to_payment(row)

    return _run(_operation, action="get_payment")


def set_payment_status(
    payment_id: int, status: PaymentStatus | str, comment: str | None = None
) -> bool:
    """Move a pending payment into a terminal state.

    Returns ``False`` when the payment is no longer pending; the first writer
    wins and later transitions leave the row untouched.
    """

    status = PaymentStatus(status)
    if status is PaymentStatus.PENDING:
        raise ValueError("payments can only move out of pending")
    if status is PaymentStatus.REJECTED:
        comment = (comment or "").strip()
        if not comment:
            raise ValueError("rejected payments require a comment")
    elif comment is not None:
        raise ValueError("only rejected payments carry a comment")

    now = _utcnow().isoformat()

    def _operation() -> int:
        with connect() as con:
            cur = con.execute(
                """
                UPDATE payments SET status=?, comment=?, updated_at=?
                WHERE id=? AND status='pending'
                """,
                (status.value, comment, now, payment_id),
            )
            return cur.rowcount

    updated = bool(_run(_operation, action="set_payment_status"))
    if updated:
        logger.info(
            "Updated payment status",
            extra={"payment_id": payment_id, "status": status.value},
        )
    else:
        logger.warning(
            "Payment is not pending; status left unchanged",
            extra={"payment_id": payment_id, "status": status.value},
        )
    return updated


def confirm_payment(payment_id: int, user_id: int, key_id: str, expires_at: datetime) -> bool:
    """Confirm a pending payment and store the owner's new expiry atomically.

    Both rows change in one transaction. Returns ``False`` without touching
    the user when the payment is no longer pending.
    """

    if not key_id or expires_at is None:
        raise ValueError("key_id and expires_at must be set together")
    expires_iso = _to_db_time(expires_at)
    now = _utcnow().isoformat()

    def _operation() -> bool:
        with connect() as con:
            cur = con.execute(
                """
                UPDATE payments SET status=?, comment=NULL, updated_at=?
                WHERE id=? AND status='pending' AND user_id=?
                """,
                (PaymentStatus.CONFIRMED.value, now, payment_id, user_id),
            )
            if not cur.rowcount:
                return False
            cur = con.execute(
                "UPDATE users SET key_id=?, expires_at=?, status='active', updated_at=? WHERE id=?",
                (key_id, expires_iso, now, user_id),
            )
            if not cur.rowcount:
                raise PersistenceError("user_not_found")
            return True

    confirmed = _run(_operation, action="confirm_payment")
    if confirmed:
        logger.info(
            "Payment confirmed and key expiry stored",
            extra={"payment_id": payment_id, "user_id": user_id, "expires_at": expires_iso},
        )
    else:
        logger.warning(
            "Payment is not pending; confirmation left unchanged",
            extra={"payment_id": payment_id},
        )
    return confirmed


def list_payments(*, status: PaymentStatus | str | None = None, limit: int = 50) -> list[Payment]:
    query = "SELECT * FROM payments"
    params: list[object] = []
    if status is not None:
        query += " WHERE status=?"
        params.append(PaymentStatus(status).value)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)

    def _operation() -> list[Payment]:
        with connect() as con:
            rows = con.execute(query, params).fetchall()
        return [_row_to_payment(row) for row in rows]

    return _run(_operation, action="list_payments")


def count_payments(*, status: PaymentStatus | str | None = None) -> int:
    query = "SELECT COUNT(*) FROM payments"
    params: tuple = ()
    if status is not None:
        query += " WHERE status=?"
        params = (PaymentStatus(status).value,)

    def _operation() -> int:
        with connect() as con:
            return int(con.execute(query, params).fetchone()[0])

    return _run(_operation, action="count_payments")


__all__ = [
    "DB_PATH",
    "Payment",
    "PaymentStatus",
    "PersistenceError",
    "User",
    "connect",
    "count_payments",
    "count_users",
    "create_payment",
    "get_payment",
    "get_user_by_handle",
    "get_user_by_id",
    "init_db",
    "list_payments",
    "list_users_expiring_between",
    "list_users_expiring_within",
    "confirm_payment",
    "set_payment_status",
    "set_user_key",
    "upsert_user",
]
