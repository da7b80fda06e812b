# backoffice/orders.py
"""
Order store: recharge / withdraw / buy-sell orders and their approval workflow.

All three order types share one table (``Order.type`` is the partition), so an
order id identifies exactly one order of exactly one type. Every status change
appends an ``OrderEvent``; the event log is never edited.

State machine::

    pending --> approved --> completed
        \\
         +---> rejected

Balance settlement happens once, on ``pending -> approved``: recharge credits
the user, withdraw debits (and is refused if the balance would go negative),
buy-sell does not touch the ledger.
"""
from __future__ import annotations

import logging
import math
import uuid
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import ledger
from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .events import EventBroadcaster, order_event
from .models import Order, OrderEvent, User

logger = logging.getLogger(__name__)

ORDER_TYPES = ("recharge", "withdraw", "buysell")
_TYPE_ALIASES = {"deposit": "recharge", "trade": "buysell", "buy-sell": "buysell", "buy_sell": "buysell"}

STATUSES = ("pending", "approved", "rejected", "completed")
TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"approved", "rejected"}),
    "approved": frozenset({"completed"}),
    "rejected": frozenset(),
    "completed": frozenset(),
}

# admin permission flag required to update each order type
CAPABILITY = {"recharge": "recharge", "withdraw": "withdraw", "buysell": "buySell"}

# ledger direction applied on approval
SETTLEMENT = {"recharge": 1.0, "withdraw": -1.0}

SYSTEM_ACTOR = "system"


# ---------- Helpers ----------

def normalize_type(val: Optional[str]) -> str:
    v = (val or "").lower().strip()
    v = _TYPE_ALIASES.get(v, v)
    if v not in ORDER_TYPES:
        raise ValidationError(f"Invalid order type '{val}'. Allowed: {', '.join(ORDER_TYPES)}.")
    return v


def normalize_status(val: Optional[str]) -> str:
    v = (val or "").lower().strip()
    if v not in STATUSES:
        raise ValidationError(f"Invalid status '{val}'. Allowed: {', '.join(STATUSES)}.")
    return v


def check_transition(current: str, new: str) -> None:
    if new not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(f"Cannot move order from '{current}' to '{new}'")


def new_order_id() -> str:
    ms = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"OD{ms}{uuid.uuid4().hex[:6].upper()}"


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they were stored as UTC
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _clean(val: Optional[str]) -> Optional[str]:
    v = (val or "").strip()
    return v or None


# ---------- Operations ----------

def create_order(
    db: Session,
    order_type: str,
    user_id: Optional[str],
    amount,
    coin: Optional[str] = None,
    wallet: Optional[str] = None,
    ip: Optional[str] = None,
    side: Optional[str] = None,
    broadcaster: Optional[EventBroadcaster] = None,
) -> Order:
    """Store a new pending order together with its creation event."""
    kind = normalize_type(order_type)
    uid = _clean(user_id)
    if not uid:
        raise ValidationError("Missing userId")
    try:
        amt = float(amount)
    except (TypeError, ValueError):
        raise ValidationError("Amount must be a number")
    if not math.isfinite(amt) or amt <= 0:
        raise ValidationError("Amount must be > 0")

    trade_side = _clean(side)
    if trade_side is not None:
        trade_side = trade_side.lower()
        if kind != "buysell" or trade_side not in ("buy", "sell"):
            raise ValidationError("side must be 'buy' or 'sell' on buysell orders")

    ledger.insert_user(db, uid)

    order = Order(
        order_id=new_order_id(),
        type=kind,
        user_id=uid,
        amount=amt,
        coin=(_clean(coin) or "").upper() or None,
        wallet=_clean(wallet),
        side=trade_side,
        ip=_clean(ip),
        status="pending",
    )
    order.events.append(OrderEvent(admin=SYSTEM_ACTOR, status="pending"))
    db.add(order)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    logger.info("order %s created: %s %s %g %s", order.order_id, kind, uid, amt, order.coin or "")

    if broadcaster is not None:
        broadcaster.publish(order_event("created", order))
    return order


def list_orders(
    db: Session,
    order_type: str,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
) -> List[Order]:
    """All orders of one type, newest first, optionally filtered by status and user."""
    kind = normalize_type(order_type)
    stmt = select(Order).where(Order.type == kind)
    if user_id is not None:
        stmt = stmt.where(Order.user_id == user_id)
    if status:
        stmt = stmt.where(Order.status == normalize_status(status))
    stmt = stmt.order_by(Order.time.desc(), Order.order_id.desc())
    return list(db.execute(stmt).scalars().all())


def get_order(db: Session, order_id: Optional[str]) -> Tuple[Order, List[OrderEvent]]:
    oid = _clean(order_id)
    order = db.get(Order, oid) if oid else None
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order, list(order.events)


def update_status(
    db: Session,
    order_id: Optional[str],
    new_status: Optional[str],
    admin_id: str,
    note: Optional[str] = None,
    *,
    order_type: Optional[str] = None,
    broadcaster: Optional[EventBroadcaster] = None,
) -> Order:
    """
    Move an order along the state machine on behalf of ``admin_id``.

    Status change, event append and balance settlement are committed together
    or not at all. The broadcaster is only called after a successful commit.
    """
    target = normalize_status(new_status)
    order, _ = get_order(db, order_id)
    if order_type is not None and normalize_type(order_type) != order.type:
        raise ValidationError(f"Order {order.order_id} is a {order.type} order")

    with ledger.user_lock(order.user_id):
        try:
            order = db.execute(
                select(Order)
                .where(Order.order_id == order.order_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()
            check_transition(order.status, target)

            if target == "approved" and order.type in SETTLEMENT:
                ledger.adjust_balance(db, order.user_id, SETTLEMENT[order.type] * float(order.amount), commit=False)

            order.status = target
            if note is not None:
                order.note = note
            order.events.append(OrderEvent(admin=admin_id, status=target, note=note))
            db.commit()
        except Exception:
            db.rollback()
            raise

    db.refresh(order)
    logger.info("order %s -> %s by %s", order.order_id, target, admin_id)

    if broadcaster is not None:
        broadcaster.publish(order_event("status", order))
    return order


def dashboard_stats(db: Session, today: Optional[date] = None) -> dict:
    """Today's recharge/withdraw sums and order count, plus pending counts."""
    today = today or datetime.now(timezone.utc).date()
    today_recharge = 0.0
    today_withdraw = 0.0
    today_orders = 0
    pending = {t: 0 for t in ORDER_TYPES}

    for o in db.execute(select(Order)).scalars():
        if o.status == "pending":
            pending[o.type] = pending.get(o.type, 0) + 1
        t = _as_utc(o.time)
        if t is None or t.date() != today:
            continue
        today_orders += 1
        if o.type == "recharge":
            today_recharge += float(o.amount)
        elif o.type == "withdraw":
            today_withdraw += float(o.amount)

    users, total_balance = db.execute(
        select(func.count(User.user_id), func.coalesce(func.sum(User.balance), 0.0))
    ).one()

    return {
        "todayDeposit": today_recharge,
        "todayWithdraw": today_withdraw,
        "todayOrder": today_orders,
        "pending": pending,
        "users": int(users or 0),
        "totalBalance": float(total_balance or 0.0),
    }
