import os

os.environ.setdefault("PRICE_FEED_ENABLED", "0")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from backoffice import admins  # noqa: E402
from backoffice.auth import hash_password  # noqa: E402
from backoffice.db import Base, get_db  # noqa: E402
from backoffice.events import EventBroadcaster  # noqa: E402
from backoffice.main import app  # noqa: E402
from backoffice.models import Admin  # noqa: E402
from backoffice.price_feed import PriceFeed  # noqa: E402


@pytest.fixture
def engine():
    """Isolated in-memory database per test."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def broadcaster():
    return EventBroadcaster(heartbeat_s=0.05)


@pytest.fixture
def client(session_factory, broadcaster):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    previous = app.state.broadcaster, app.state.price_feed
    app.state.broadcaster = broadcaster
    app.state.price_feed = PriceFeed(symbols=["BTCUSDT", "ETHUSDT"])
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        app.state.broadcaster, app.state.price_feed = previous


@pytest.fixture
def make_admin(db_session):
    def _make(admin_id, password="pw", is_super=False, recharge=False, withdraw=False, buysell=False):
        a = Admin(
            id=admin_id,
            password_hash=hash_password(password),
            is_super=is_super,
            perm_recharge=recharge,
            perm_withdraw=withdraw,
            perm_buysell=buysell,
        )
        db_session.add(a)
        db_session.commit()
        return a
    return _make


@pytest.fixture
def super_token(db_session, make_admin):
    make_admin("root", "rootpw", is_super=True, recharge=True, withdraw=True, buysell=True)
    return admins.login(db_session, "root", "rootpw")

