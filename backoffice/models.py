
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Float, DateTime, Text, Boolean, ForeignKey
from sqlalchemy.orm import relationship

from .db import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    user_id = Column(String, primary_key=True)                 # client-generated, e.g. U1234
    balance = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), default=_now_utc)


class Admin(Base):
    __tablename__ = "admins"
    id = Column(String, primary_key=True)                       # login id
    password_hash = Column(String, nullable=False)              # bcrypt
    is_super = Column(Boolean, nullable=False, default=False)
    perm_recharge = Column(Boolean, nullable=False, default=False)
    perm_withdraw = Column(Boolean, nullable=False, default=False)
    perm_buysell = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_now_utc)

    sessions = relationship("AdminSession", back_populates="admin", cascade="all, delete-orphan")

    @property
    def permissions(self) -> dict:
        return {
            "recharge": bool(self.perm_recharge),
            "withdraw": bool(self.perm_withdraw),
            "buySell": bool(self.perm_buysell),
        }


class AdminSession(Base):
    __tablename__ = "admin_sessions"
    jti = Column(String, primary_key=True)                      # JWT id
    admin_id = Column(String, ForeignKey("admins.id", ondelete="CASCADE"), index=True, nullable=False)
    issued_at = Column(DateTime(timezone=True), default=_now_utc)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked = Column(Boolean, nullable=False, default=False)

    admin = relationship("Admin", back_populates="sessions")


class Order(Base):
    __tablename__ = "orders"
    order_id = Column(String, primary_key=True)                 # OD<epoch-ms><hex>
    type = Column(String, index=True, nullable=False)           # recharge | withdraw | buysell
    user_id = Column(String, index=True, nullable=False)        # links to User.user_id
    time = Column(DateTime(timezone=True), default=_now_utc, index=True)
    amount = Column(Float, nullable=False)
    coin = Column(String)
    wallet = Column(String)
    side = Column(String)                                       # buy | sell (buysell only)
    ip = Column(String)
    status = Column(String, index=True, nullable=False, default="pending")
    note = Column(Text)

    events = relationship(
        "OrderEvent",
        back_populates="order",
        order_by="OrderEvent.id",
        cascade="all, delete-orphan",
    )


class OrderEvent(Base):
    __tablename__ = "order_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.order_id"), index=True, nullable=False)
    time = Column(DateTime(timezone=True), default=_now_utc)
    admin = Column(String, nullable=False)                      # acting admin id, "system" on create
    status = Column(String, nullable=False)
    note = Column(Text)

    order = relationship("Order", back_populates="events")
