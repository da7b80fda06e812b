
# backoffice/auth.py
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import bcrypt
from jose import jwt, JWTError
from fastapi import Cookie, Depends, Header
from sqlalchemy.orm import Session

from .db import get_db
from .errors import AuthError, PermissionDeniedError
from .models import Admin, AdminSession

# ─────────────────────────────────────────────────────────────────────────────
# Env config
# ─────────────────────────────────────────────────────────────────────────────

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALG = "HS256"
# default 12h (in minutes)
JWT_EXPIRE_MIN = int(os.getenv("JWT_EXPIRE_MIN", "720"))


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Password hashing
# ─────────────────────────────────────────────────────────────────────────────

def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode(), bcrypt.gensalt()).decode()


def verify_password(plain: str, hashed: str) -> bool:
    if not plain or not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode(), hashed.encode())
    except ValueError:
        # malformed stored hash
        return False


# ─────────────────────────────────────────────────────────────────────────────
# JWT helpers
# ─────────────────────────────────────────────────────────────────────────────

def create_token(admin_id: str, ttl_min: Optional[int] = None) -> Tuple[str, str, datetime]:
    """Sign a session token for ``admin_id``. Returns (token, jti, expires_at)."""
    iat = _now_utc()
    exp = iat + timedelta(minutes=JWT_EXPIRE_MIN if ttl_min is None else ttl_min)
    jti = uuid.uuid4().hex
    payload = {
        "sub": admin_id,
        "jti": jti,
        "iat": int(iat.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG), jti, exp


def decode_token(token: str) -> dict:
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError as e:
        raise AuthError(f"Invalid or expired session: {e}")
    if not claims.get("sub") or not claims.get("jti"):
        raise AuthError("Malformed session token")
    return claims


# ─────────────────────────────────────────────────────────────────────────────
# Auth dependencies
# ─────────────────────────────────────────────────────────────────────────────

def optional_token(
    authorization: Optional[str] = Header(default=None),     # "Bearer <jwt>"
    session: Optional[str] = Cookie(default=None),           # cookie fallback set by /login
) -> Optional[str]:
    """
    Extract the admin session token. Accepts either:
      - Header: Authorization: Bearer <jwt>
      - Cookie: session=<jwt>
    """
    token = None

    if authorization:
        parts = authorization.strip().split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            token = parts[1]

    if not token and session:
        token = session

    return token or None


def bearer_token(token: Optional[str] = Depends(optional_token)) -> str:
    if not token:
        raise AuthError("Unauthenticated")
    return token


def authorize(db: Session, token: Optional[str]) -> Admin:
    """
    Resolve a bearer token to its admin. The signature and expiry are checked,
    then the server-side session row must exist, be unrevoked and unexpired,
    and the admin must still exist.
    """
    if not token:
        raise AuthError("Unauthenticated")
    claims = decode_token(token)
    sess = db.get(AdminSession, claims["jti"])
    if sess is None or sess.revoked or sess.admin_id != claims["sub"]:
        raise AuthError("Session revoked")
    expires_at = sess.expires_at if sess.expires_at.tzinfo else sess.expires_at.replace(tzinfo=timezone.utc)
    if expires_at <= _now_utc():
        raise AuthError("Session expired")
    admin = db.get(Admin, claims["sub"])
    if admin is None:
        raise AuthError("Unknown admin")
    return admin


def require_admin(token: str = Depends(bearer_token), db: Session = Depends(get_db)) -> Admin:
    """Resolve the request's token to its Admin row; raises AuthError otherwise."""
    return authorize(db, token)


def optional_admin(token: Optional[str] = Depends(optional_token), db: Session = Depends(get_db)) -> Optional[Admin]:
    """Admin behind the request, or None when no token was sent. A bad token still fails."""
    return authorize(db, token) if token else None


def check_permission(admin: Admin, capability: str) -> None:
    """Super admins hold every capability; others need the matching flag."""
    if admin.is_super:
        return
    if not admin.permissions.get(capability, False):
        raise PermissionDeniedError(f"Admin {admin.id} lacks '{capability}' permission")
