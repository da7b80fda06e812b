from pydantic import AliasChoices, BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Dict, Literal, Optional
from datetime import datetime

OrderStatus = Literal["pending", "approved", "rejected", "completed"]

# ---------- Users / balances ----------
class UserSync(BaseModel):
    userid: Optional[str] = Field(default=None, validation_alias=AliasChoices("userid", "userId"))

class UserOut(BaseModel):
    user_id: str
    balance: float
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True

class SetBalanceIn(BaseModel):
    userid: Optional[str] = Field(default=None, validation_alias=AliasChoices("userid", "userId"))
    balance: float

class AdjustBalanceIn(BaseModel):
    userid: Optional[str] = Field(default=None, validation_alias=AliasChoices("userid", "userId"))
    delta: float

# ---------- Orders ----------
class OrderIn(BaseModel):
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("userId", "userid"))
    amount: Optional[float] = None
    coin: Optional[str] = None
    wallet: Optional[str] = None
    side: Optional[str] = Field(default=None, validation_alias=AliasChoices("side", "tradeType"))

class OrderOut(BaseModel):
    order_id: str
    type: str
    user_id: str
    time: Optional[datetime] = None
    amount: float
    coin: Optional[str] = None
    wallet: Optional[str] = None
    side: Optional[str] = None
    ip: Optional[str] = None
    status: OrderStatus
    note: Optional[str] = None

    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True

class OrderEventOut(BaseModel):
    time: Optional[datetime] = None
    admin: str
    status: OrderStatus
    note: Optional[str] = None

    class Config:
        from_attributes = True

class TransactionUpdate(BaseModel):
    type: Optional[str] = None
    order_id: str = Field(validation_alias=AliasChoices("orderId", "order_id"))
    status: str
    note: Optional[str] = None

# ---------- Admins ----------
class LoginIn(BaseModel):
    id: str = Field(validation_alias=AliasChoices("id", "username"))
    password: str

class Permissions(BaseModel):
    recharge: bool = False
    withdraw: bool = False
    buySell: bool = False

class AdminCreate(BaseModel):
    id: str
    password: str
    permissions: Permissions = Permissions()
    isSuper: bool = False

class AdminDelete(BaseModel):
    id: str

class AdminOut(BaseModel):
    id: str
    isSuper: bool = Field(validation_alias="is_super")
    permissions: Dict[str, bool]
    created: Optional[datetime] = Field(default=None, validation_alias="created_at")

    class Config:
        from_attributes = True


def dump(model_cls, obj) -> dict:
    """ORM row -> JSON-ready dict using the schema's public (camelCase) names."""
    return model_cls.model_validate(obj).model_dump(by_alias=True, mode="json")
