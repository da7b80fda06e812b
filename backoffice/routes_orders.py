# routes_orders.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import orders
from .auth import check_permission, optional_admin, require_admin
from .db import get_db
from .deps import client_ip, get_broadcaster
from .errors import AuthError
from .events import EventBroadcaster
from .models import Admin, User
from .notify import send_order_notification
from .schemas import OrderEventOut, OrderIn, OrderOut, TransactionUpdate, UserOut, dump

router = APIRouter(tags=["orders"])


# ---------------------------------------------------------------------------
# Submission (public)
# ---------------------------------------------------------------------------

@router.post("/api/order/{order_type}")
def submit_order(
    order_type: str,
    payload: OrderIn,
    request: Request,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    o = orders.create_order(
        db,
        order_type,
        payload.user_id,
        payload.amount,
        coin=payload.coin,
        wallet=payload.wallet,
        ip=client_ip(request),
        side=payload.side,
        broadcaster=broadcaster,
    )
    background.add_task(send_order_notification, o)
    return {"ok": True, "orderId": o.order_id, "status": o.status}


@router.get("/api/order/{order_type}/list")
def list_by_type(
    order_type: str,
    status: Optional[str] = Query(None, description="pending|approved|rejected|completed"),
    userid: Optional[str] = Query(None, description="Only this user's orders; required without an admin token"),
    db: Session = Depends(get_db),
    admin: Optional[Admin] = Depends(optional_admin),
):
    uid = (userid or "").strip() or None
    if admin is None and uid is None:
        raise AuthError("Unauthenticated")
    rows = orders.list_orders(db, order_type, status, user_id=uid)
    return {"ok": True, "orders": [dump(OrderOut, o) for o in rows]}


# ---------------------------------------------------------------------------
# Admin workflow
# ---------------------------------------------------------------------------

@router.post("/api/transaction/update")
def update_transaction(
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    # permission follows the stored type, not the one the caller claims
    order, _ = orders.get_order(db, payload.order_id)
    check_permission(admin, orders.CAPABILITY[order.type])
    o = orders.update_status(
        db,
        payload.order_id,
        payload.status,
        admin.id,
        payload.note,
        order_type=payload.type,
        broadcaster=broadcaster,
    )
    return {"ok": True, "order": dump(OrderOut, o)}


@router.get("/api/transactions")
def transactions(
    fetchOrder: Optional[str] = Query(None, description="Also return this order and its event log"),
    status: Optional[str] = Query(None, description="Filter every list by status"),
    db: Session = Depends(get_db),
):
    out = {"ok": True}
    if fetchOrder:
        order, events = orders.get_order(db, fetchOrder)
        out["order"] = dump(OrderOut, order)
        out["orderEvents"] = [dump(OrderEventOut, e) for e in events]

    users = db.execute(select(User).order_by(User.created_at.desc(), User.user_id)).scalars().all()
    out["users"] = [dump(UserOut, u) for u in users]
    for kind in orders.ORDER_TYPES:
        out[kind] = [dump(OrderOut, o) for o in orders.list_orders(db, kind, status)]
    out["stats"] = orders.dashboard_stats(db)
    return out


# ---------------------------------------------------------------------------
# Push channel
# ---------------------------------------------------------------------------

@router.get("/api/orders/stream")
async def order_stream(request: Request, broadcaster: EventBroadcaster = Depends(get_broadcaster)):
    return StreamingResponse(
        broadcaster.stream(request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
