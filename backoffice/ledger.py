# backoffice/ledger.py
"""
Balance ledger: the authoritative per-user balance.

Every mutation of ``User.balance`` goes through this module. Mutations for one
user id are serialized by a process-local re-entrant lock and, on backends
that support it, by ``SELECT ... FOR UPDATE`` on the user row.

User rows are created on first touch with an ``INSERT ... ON CONFLICT DO
NOTHING``, so two requests racing on a new user id both succeed.
"""
from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import InsufficientBalanceError, ValidationError
from .models import User, _now_utc

logger = logging.getLogger(__name__)

# entries vanish once no thread holds or waits on the lock
_locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()

_UPSERT_DIALECTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


@contextmanager
def user_lock(user_id: str) -> Iterator[None]:
    """Hold the mutation lock for ``user_id``. Re-entrant within a thread."""
    with _locks_guard:
        lock = _locks.get(user_id)
        if lock is None:
            lock = threading.RLock()
            _locks[user_id] = lock
    with lock:
        yield


def _require_user_id(user_id: Optional[str]) -> str:
    uid = (user_id or "").strip()
    if not uid:
        raise ValidationError("Missing userid")
    return uid


def insert_user(db: Session, user_id: str) -> bool:
    """
    Create the user row with a zero balance unless it already exists.
    Does not commit. Returns True when this call inserted the row.
    """
    dialect_insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if dialect_insert is not None:
        stmt = (
            dialect_insert(User.__table__)
            .values(user_id=user_id, balance=0.0, created_at=_now_utc())
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        return db.execute(stmt).rowcount == 1

    if db.get(User, user_id) is not None:
        return False
    try:
        with db.begin_nested():
            db.add(User(user_id=user_id, balance=0.0))
    except IntegrityError:
        return False
    return True


def _locked_user(db: Session, user_id: str) -> User:
    """Fetch the user row for update, creating it on first touch."""
    insert_user(db, user_id)
    stmt = (
        select(User)
        .where(User.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one()


def ensure_user(db: Session, user_id: Optional[str]) -> User:
    """First-touch registration. Commits."""
    uid = _require_user_id(user_id)
    u = db.get(User, uid)
    if u is not None:
        return u
    try:
        created = insert_user(db, uid)
        db.commit()
    except Exception:
        db.rollback()
        raise
    if created:
        logger.info("registered user %s", uid)
    return db.get(User, uid)


def get_balance(db: Session, user_id: Optional[str]) -> float:
    uid = _require_user_id(user_id)
    u = db.get(User, uid)
    return float(u.balance or 0.0) if u else 0.0


def adjust_balance(db: Session, user_id: Optional[str], delta: float, *, commit: bool = True) -> float:
    """
    Atomically add ``delta`` to the user's balance and return the new value.

    Raises InsufficientBalanceError, without touching the row, if the result
    would be negative. With ``commit=False`` the change is only flushed so the
    caller can fold it into a larger transaction; the caller must then hold
    ``user_lock(user_id)`` until it commits.
    """
    uid = _require_user_id(user_id)
    with user_lock(uid):
        u = _locked_user(db, uid)
        current = float(u.balance or 0.0)
        new_balance = current + float(delta)
        if new_balance < 0:
            if commit:
                db.rollback()
            raise InsufficientBalanceError(
                f"Insufficient balance for {uid}: have {current}, need {-float(delta)}"
            )
        u.balance = new_balance
        if commit:
            db.commit()
        else:
            db.flush()
    logger.info("balance %s %+g -> %g", uid, float(delta), new_balance)
    return new_balance


def set_balance(db: Session, user_id: Optional[str], value: float) -> float:
    """Admin override: unconditional set, no non-negativity check."""
    uid = _require_user_id(user_id)
    with user_lock(uid):
        u = _locked_user(db, uid)
        u.balance = float(value)
        db.commit()
    logger.warning("balance for %s overridden to %g", uid, float(value))
    return float(value)
