# routes_admin.py
from __future__ import annotations

import os

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from . import admins
from .auth import JWT_EXPIRE_MIN, bearer_token
from .db import get_db
from .schemas import AdminCreate, AdminDelete, AdminOut, LoginIn, dump

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _truthy(name: str) -> bool:
    v = os.getenv(name, "")
    return v not in ("", "0", "false", "False", "no", "No")


IS_PROD = (
    _truthy("RAILWAY_ENVIRONMENT")
    or os.getenv("ENV", "").lower() in {"prod", "production"}
    or _truthy("FORCE_CROSS_SITE_COOKIES")
)


def cookie_kwargs() -> dict:
    max_age = JWT_EXPIRE_MIN * 60
    if IS_PROD:
        return dict(httponly=True, samesite="none", secure=True, path="/", max_age=max_age)
    return dict(httponly=True, samesite="lax", secure=False, path="/", max_age=max_age)


@router.post("/login")
def login(payload: LoginIn, resp: Response, db: Session = Depends(get_db)):
    token = admins.login(db, payload.id, payload.password)
    resp.set_cookie(key="session", value=token, **cookie_kwargs())
    return {"ok": True, "token": token}


@router.post("/logout")
def logout(resp: Response, token: str = Depends(bearer_token), db: Session = Depends(get_db)):
    admins.logout(db, token)
    kw = cookie_kwargs()
    resp.delete_cookie(key="session", path=kw["path"], httponly=True,
                       samesite=kw["samesite"], secure=kw["secure"])
    return {"ok": True}


@router.get("/list")
def list_admins(token: str = Depends(bearer_token), db: Session = Depends(get_db)):
    rows = admins.list_admins(db, token)
    return {"ok": True, "admins": {a.id: dump(AdminOut, a) for a in rows}}


@router.post("/create")
def create_admin(payload: AdminCreate, token: str = Depends(bearer_token), db: Session = Depends(get_db)):
    a = admins.create_admin(
        db,
        token,
        payload.id,
        payload.password,
        permissions=payload.permissions.model_dump(),
        is_super=payload.isSuper,
    )
    return {"ok": True, "admin": dump(AdminOut, a)}


@router.post("/delete")
def delete_admin(payload: AdminDelete, token: str = Depends(bearer_token), db: Session = Depends(get_db)):
    admins.delete_admin(db, token, payload.id)
    return {"ok": True}
