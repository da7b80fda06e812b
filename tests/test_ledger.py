import gc
import threading

import pytest
from sqlalchemy import event

from backoffice import ledger
from backoffice.errors import InsufficientBalanceError, ValidationError
from backoffice.models import User


def test_unknown_user_reads_zero_without_error(db_session):
    assert ledger.get_balance(db_session, "U0000") == 0.0
    assert db_session.get(User, "U0000") is None


def test_missing_user_id_is_rejected(db_session):
    with pytest.raises(ValidationError):
        ledger.get_balance(db_session, "")
    with pytest.raises(ValidationError):
        ledger.adjust_balance(db_session, None, 5)


def test_adjust_creates_user_on_first_touch(db_session):
    assert ledger.adjust_balance(db_session, "U1", 12.5) == 12.5
    assert ledger.get_balance(db_session, "U1") == 12.5


@pytest.mark.parametrize("start,delta", [(100.0, 40.0), (40.0, 40.0), (0.0, 0.0)])
def test_debit_then_credit_is_identity(db_session, start, delta):
    ledger.set_balance(db_session, "U1", start)
    ledger.adjust_balance(db_session, "U1", -delta)
    assert ledger.adjust_balance(db_session, "U1", +delta) == start


def test_adjust_never_goes_negative(db_session):
    ledger.set_balance(db_session, "U1", 10)
    with pytest.raises(InsufficientBalanceError):
        ledger.adjust_balance(db_session, "U1", -10.01)
    assert ledger.get_balance(db_session, "U1") == 10.0
    assert ledger.adjust_balance(db_session, "U1", -10) == 0.0


def test_failed_adjust_on_new_user_leaves_no_row(db_session):
    with pytest.raises(InsufficientBalanceError):
        ledger.adjust_balance(db_session, "U2", -1)
    assert db_session.get(User, "U2") is None


def test_set_balance_is_an_unconditional_override(db_session):
    ledger.set_balance(db_session, "U1", 10)
    assert ledger.set_balance(db_session, "U1", -3) == -3.0
    assert ledger.get_balance(db_session, "U1") == -3.0


def test_ensure_user_is_idempotent(db_session):
    a = ledger.ensure_user(db_session, " U7 ")
    ledger.adjust_balance(db_session, "U7", 4)
    b = ledger.ensure_user(db_session, "U7")
    assert a.user_id == b.user_id == "U7"
    assert b.balance == 4.0


def test_user_lock_serializes_per_user():
    order = []
    inside = threading.Event()
    release = threading.Event()

    def holder():
        with ledger.user_lock("U1"):
            inside.set()
            release.wait(1)
            order.append("holder")

    def waiter():
        inside.wait(1)
        with ledger.user_lock("U1"):
            order.append("waiter")

    t1 = threading.Thread(target=holder)
    t2 = threading.Thread(target=waiter)
    t1.start()
    t2.start()
    inside.wait(1)
    # a different user is not blocked
    with ledger.user_lock("U2"):
        order.append("other")
    release.set()
    t1.join(2)
    t2.join(2)

    assert order == ["other", "holder", "waiter"]


def test_user_lock_is_reentrant():
    with ledger.user_lock("U1"):
        with ledger.user_lock("U1"):
            pass


def test_ensure_user_tolerates_concurrent_registration(db_session, session_factory):
    other = session_factory()

    @event.listens_for(db_session, "do_orm_execute")
    def _register_elsewhere(state):
        if state.is_insert and other.get(User, "U5") is None:
            other.add(User(user_id="U5", balance=3.0))
            other.commit()

    try:
        u = ledger.ensure_user(db_session, "U5")
    finally:
        other.close()

    assert u.user_id == "U5"
    assert u.balance == 3.0


def test_adjust_balance_on_user_created_elsewhere(db_session, session_factory):
    other = session_factory()

    @event.listens_for(db_session, "do_orm_execute")
    def _register_elsewhere(state):
        if state.is_insert and other.get(User, "U6") is None:
            other.add(User(user_id="U6", balance=10.0))
            other.commit()

    try:
        assert ledger.adjust_balance(db_session, "U6", -4) == 6.0
    finally:
        other.close()


def test_user_locks_are_dropped_when_idle():
    with ledger.user_lock("U-idle"):
        assert "U-idle" in ledger._locks
    gc.collect()
    assert "U-idle" not in ledger._locks
