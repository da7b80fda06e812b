# routes_users.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from . import ledger
from .auth import require_admin
from .db import get_db
from .models import Admin
from .schemas import AdjustBalanceIn, SetBalanceIn, UserOut, UserSync, dump

logger = logging.getLogger(__name__)

router = APIRouter(tags=["users"])


@router.post("/api/users/sync")
def sync_user(payload: UserSync, db: Session = Depends(get_db)):
    """
    Register the browser's user id on first touch.
    No validation beyond presence; ids are client-generated.
    """
    u = ledger.ensure_user(db, payload.userid)
    return {"ok": True, "user": dump(UserOut, u)}


@router.get("/api/balance")
def get_balance(
    userid: Optional[str] = Query(None, description="Client user id, e.g. U1234"),
    db: Session = Depends(get_db),
):
    """Balance for a user; unknown users are created with 0."""
    u = ledger.ensure_user(db, userid)
    return {"ok": True, "userid": u.user_id, "balance": float(u.balance or 0.0)}


@router.post("/set-balance")
def set_balance(
    payload: SetBalanceIn,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
):
    """Admin override; may set any value, including below zero."""
    value = ledger.set_balance(db, payload.userid, payload.balance)
    logger.info("set-balance %s=%g by %s", payload.userid, value, admin.id)
    return {"success": True, "balance": value}


@router.post("/api/balance/adjust")
def adjust_balance(
    payload: AdjustBalanceIn,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
):
    """Admin add/deduct; refuses to go below zero."""
    value = ledger.adjust_balance(db, payload.userid, payload.delta)
    logger.info("adjust-balance %s %+g by %s", payload.userid, payload.delta, admin.id)
    return {"ok": True, "balance": value}
