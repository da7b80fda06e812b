import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event, func, select

from backoffice import ledger, orders
from backoffice.errors import (
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from backoffice.events import EventBroadcaster
from backoffice.models import Order, OrderEvent, User


def test_create_order_is_pending_with_one_creation_event(db_session):
    o = orders.create_order(db_session, "recharge", "U1234", 50, coin="usdt", wallet="0xabc")

    assert o.order_id.startswith("OD")
    assert o.status == "pending"
    assert o.coin == "USDT"
    order, events = orders.get_order(db_session, o.order_id)
    assert [(e.status, e.admin) for e in events] == [("pending", orders.SYSTEM_ACTOR)]


def test_create_order_registers_unknown_user(db_session):
    orders.create_order(db_session, "withdraw", "U9999", 5)
    assert ledger.get_balance(db_session, "U9999") == 0.0


@pytest.mark.parametrize("amount", [0, -1, None, "abc", float("nan")])
def test_create_order_rejects_bad_amount(db_session, amount):
    with pytest.raises(ValidationError):
        orders.create_order(db_session, "recharge", "U1234", amount)
    assert db_session.query(Order).count() == 0


def test_create_order_requires_user_and_known_type(db_session):
    with pytest.raises(ValidationError):
        orders.create_order(db_session, "recharge", "  ", 10)
    with pytest.raises(ValidationError):
        orders.create_order(db_session, "loan", "U1", 10)


def test_side_only_on_buysell(db_session):
    o = orders.create_order(db_session, "buysell", "U1", 2, coin="btc", side="BUY")
    assert o.side == "buy"
    with pytest.raises(ValidationError):
        orders.create_order(db_session, "recharge", "U1", 2, side="buy")
    with pytest.raises(ValidationError):
        orders.create_order(db_session, "buysell", "U1", 2, side="hold")


def test_type_aliases_from_legacy_clients(db_session):
    assert orders.create_order(db_session, "trade", "U1", 1).type == "buysell"
    assert orders.create_order(db_session, "deposit", "U1", 1).type == "recharge"


def test_order_ids_are_unique_and_in_one_partition(db_session):
    ids = [orders.create_order(db_session, t, "U1", 1).order_id
           for t in orders.ORDER_TYPES for _ in range(5)]
    assert len(set(ids)) == len(ids)

    seen = {}
    for kind in orders.ORDER_TYPES:
        for o in orders.list_orders(db_session, kind):
            assert o.order_id not in seen
            seen[o.order_id] = kind
    assert len(seen) == len(ids)


def test_list_orders_newest_first_with_status_filter(db_session):
    older = orders.create_order(db_session, "recharge", "U1", 1)
    newer = orders.create_order(db_session, "recharge", "U1", 2)
    older.time = datetime.now(timezone.utc) - timedelta(hours=1)
    db_session.commit()
    orders.update_status(db_session, newer.order_id, "rejected", "root")

    assert [o.order_id for o in orders.list_orders(db_session, "recharge")] == [newer.order_id, older.order_id]
    assert [o.order_id for o in orders.list_orders(db_session, "recharge", "pending")] == [older.order_id]
    assert orders.list_orders(db_session, "withdraw") == []


def test_get_order_unknown_id(db_session):
    with pytest.raises(NotFoundError):
        orders.get_order(db_session, "OD-nope")


ALLOWED = {("pending", "approved"), ("pending", "rejected"), ("approved", "completed")}


@pytest.mark.parametrize("current", orders.STATUSES)
@pytest.mark.parametrize("target", orders.STATUSES)
def test_transition_table(current, target):
    if (current, target) in ALLOWED:
        orders.check_transition(current, target)
    else:
        with pytest.raises(InvalidTransitionError):
            orders.check_transition(current, target)


def test_illegal_transition_leaves_order_untouched(db_session):
    o = orders.create_order(db_session, "recharge", "U1", 10)
    orders.update_status(db_session, o.order_id, "rejected", "root")

    with pytest.raises(InvalidTransitionError):
        orders.update_status(db_session, o.order_id, "approved", "root")

    order, events = orders.get_order(db_session, o.order_id)
    assert order.status == "rejected"
    assert [e.status for e in events] == ["pending", "rejected"]
    assert ledger.get_balance(db_session, "U1") == 0.0


def test_unknown_status_is_a_validation_error(db_session):
    o = orders.create_order(db_session, "recharge", "U1", 10)
    with pytest.raises(ValidationError):
        orders.update_status(db_session, o.order_id, "processing", "root")


def test_recharge_approval_credits_once(db_session):
    o = orders.create_order(db_session, "recharge", "U1234", 50)

    approved = orders.update_status(db_session, o.order_id, "approved", "root", note="paid in")
    assert approved.status == "approved"
    assert approved.note == "paid in"
    assert ledger.get_balance(db_session, "U1234") == 50.0

    orders.update_status(db_session, o.order_id, "completed", "root")
    assert ledger.get_balance(db_session, "U1234") == 50.0

    _, events = orders.get_order(db_session, o.order_id)
    assert [(e.status, e.admin) for e in events] == [
        ("pending", "system"), ("approved", "root"), ("completed", "root"),
    ]


def test_withdraw_approval_debits(db_session):
    ledger.set_balance(db_session, "U1", 80)
    o = orders.create_order(db_session, "withdraw", "U1", 30)
    orders.update_status(db_session, o.order_id, "approved", "root")
    assert ledger.get_balance(db_session, "U1") == 50.0


def test_withdraw_with_insufficient_balance_changes_nothing(db_session):
    ledger.set_balance(db_session, "U1", 10)
    o = orders.create_order(db_session, "withdraw", "U1", 50)

    with pytest.raises(InsufficientBalanceError):
        orders.update_status(db_session, o.order_id, "approved", "root")

    order, events = orders.get_order(db_session, o.order_id)
    assert order.status == "pending"
    assert len(events) == 1
    assert ledger.get_balance(db_session, "U1") == 10.0


def test_rejecting_withdraw_never_touches_balance(db_session):
    ledger.set_balance(db_session, "U1", 10)
    o = orders.create_order(db_session, "withdraw", "U1", 50)
    orders.update_status(db_session, o.order_id, "rejected", "root", note="kyc")
    assert ledger.get_balance(db_session, "U1") == 10.0


def test_buysell_has_no_ledger_effect(db_session):
    ledger.set_balance(db_session, "U1", 5)
    o = orders.create_order(db_session, "buysell", "U1", 100, coin="ETH", side="sell")
    orders.update_status(db_session, o.order_id, "approved", "root")
    assert ledger.get_balance(db_session, "U1") == 5.0


def test_update_rejects_mismatched_type(db_session):
    o = orders.create_order(db_session, "recharge", "U1", 10)
    with pytest.raises(ValidationError):
        orders.update_status(db_session, o.order_id, "approved", "root", order_type="withdraw")
    assert orders.get_order(db_session, o.order_id)[0].status == "pending"


def test_approval_is_pushed_to_subscribers(db_session):
    b = EventBroadcaster()

    async def scenario():
        sub = b.subscribe()
        o = orders.create_order(db_session, "recharge", "U1234", 50, broadcaster=b)
        orders.update_status(db_session, o.order_id, "approved", "root", broadcaster=b)
        created = json.loads(await sub.next(timeout=1))
        changed = json.loads(await sub.next(timeout=1))
        return o.order_id, created, changed

    oid, created, changed = asyncio.run(scenario())
    assert (created["event"], created["orderId"], created["status"]) == ("created", oid, "pending")
    assert (changed["event"], changed["orderId"], changed["status"]) == ("status", oid, "approved")
    assert changed["type"] == "recharge"


def test_failed_update_publishes_nothing(db_session):
    b = EventBroadcaster()
    ledger.set_balance(db_session, "U1", 0)
    o = orders.create_order(db_session, "withdraw", "U1", 5)

    async def scenario():
        sub = b.subscribe()
        with pytest.raises(InsufficientBalanceError):
            orders.update_status(db_session, o.order_id, "approved", "root", broadcaster=b)
        return await sub.next(timeout=0.05)

    assert asyncio.run(scenario()) is None


def test_dashboard_stats(db_session):
    ledger.set_balance(db_session, "U1", 100)
    r = orders.create_order(db_session, "recharge", "U1", 40)
    orders.create_order(db_session, "recharge", "U2", 10)
    orders.create_order(db_session, "withdraw", "U1", 25)
    old = orders.create_order(db_session, "withdraw", "U1", 1000)
    old.time = datetime.now(timezone.utc) - timedelta(days=3)
    db_session.commit()
    orders.update_status(db_session, r.order_id, "approved", "root")

    stats = orders.dashboard_stats(db_session)

    assert stats["todayDeposit"] == 50.0
    assert stats["todayWithdraw"] == 25.0
    assert stats["todayOrder"] == 3
    assert stats["pending"] == {"recharge": 1, "withdraw": 2, "buysell": 0}
    assert stats["users"] == 2
    assert stats["totalBalance"] == 140.0


def test_event_log_is_append_only(db_session):
    o = orders.create_order(db_session, "recharge", "U1", 1)
    orders.update_status(db_session, o.order_id, "approved", "a1")
    first_ids = [e.id for e in db_session.query(OrderEvent).order_by(OrderEvent.id)]
    orders.update_status(db_session, o.order_id, "completed", "a2")
    ids = [e.id for e in db_session.query(OrderEvent).order_by(OrderEvent.id)]
    assert ids[: len(first_ids)] == first_ids
    assert len(ids) == len(first_ids) + 1


def _commit_user_on_first_insert(session, other_session, user_id):
    """Make ``other_session`` commit ``user_id`` right before ``session`` inserts it."""
    fired = []

    @event.listens_for(session, "do_orm_execute")
    def _race(state):
        if state.is_insert and not fired:
            fired.append(True)
            other_session.add(User(user_id=user_id, balance=0.0))
            other_session.commit()

    return fired


def test_concurrent_first_order_for_new_user_succeeds(db_session, session_factory):
    other = session_factory()
    try:
        fired = _commit_user_on_first_insert(db_session, other, "U5")
        o = orders.create_order(db_session, "recharge", "U5", 10)
    finally:
        other.close()

    assert fired == [True]
    assert orders.get_order(db_session, o.order_id)[0].user_id == "U5"
    assert db_session.execute(select(func.count()).select_from(User)).scalar_one() == 1
