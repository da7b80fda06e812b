# backoffice/admins.py
"""Admin directory: login sessions and super-admin managed accounts."""
from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .auth import authorize, create_token, decode_token, hash_password, verify_password
from .errors import AuthError, ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from .models import Admin, AdminSession

logger = logging.getLogger(__name__)

# First super admin, created at startup when the directory is empty.
ADMIN_ID = os.getenv("ADMIN_ID", "")
# Preferred: bcrypt hash string
ADMIN_PASSWORD_HASH = os.getenv("ADMIN_PASSWORD_HASH", "")
# Convenience for local/dev
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

PERMISSION_KEYS = ("recharge", "withdraw", "buySell")


def _permission_flags(permissions: Optional[Dict[str, bool]]) -> dict:
    perms = permissions or {}
    unknown = set(perms) - set(PERMISSION_KEYS)
    if unknown:
        raise ValidationError(f"Unknown permission(s): {', '.join(sorted(unknown))}")
    return dict(
        perm_recharge=bool(perms.get("recharge", False)),
        perm_withdraw=bool(perms.get("withdraw", False)),
        perm_buysell=bool(perms.get("buySell", False)),
    )


def login(db: Session, admin_id: str, password: str) -> str:
    """Verify credentials and open a server-side session; returns the bearer token."""
    a = db.get(Admin, (admin_id or "").strip())
    if a is None or not verify_password(password or "", a.password_hash):
        logger.warning("failed admin login for %r", admin_id)
        raise AuthError("Bad credentials")
    token, jti, expires_at = create_token(a.id)
    db.add(AdminSession(jti=jti, admin_id=a.id, expires_at=expires_at))
    db.commit()
    logger.info("admin %s logged in", a.id)
    return token


def logout(db: Session, token: str) -> None:
    """Revoke the session behind ``token``."""
    authorize(db, token)
    sess = db.get(AdminSession, decode_token(token)["jti"])
    sess.revoked = True
    db.commit()


def list_admins(db: Session, caller_token: str) -> List[Admin]:
    authorize(db, caller_token)
    return list(db.execute(select(Admin).order_by(Admin.created_at, Admin.id)).scalars().all())


def _require_super(db: Session, caller_token: str) -> Admin:
    caller = authorize(db, caller_token)
    if not caller.is_super:
        raise PermissionDeniedError("Super admin required")
    return caller


def create_admin(
    db: Session,
    caller_token: str,
    admin_id: str,
    password: str,
    permissions: Optional[Dict[str, bool]] = None,
    is_super: bool = False,
) -> Admin:
    caller = _require_super(db, caller_token)
    new_id = (admin_id or "").strip()
    if not new_id or not password:
        raise ValidationError("id and password are required")
    flags = _permission_flags(permissions)
    if db.get(Admin, new_id) is not None:
        raise ConflictError(f"Admin {new_id} already exists")

    a = Admin(id=new_id, password_hash=hash_password(password), is_super=bool(is_super), **flags)
    db.add(a)
    db.commit()
    db.refresh(a)
    logger.info("admin %s created by %s (super=%s)", a.id, caller.id, a.is_super)
    return a


def delete_admin(db: Session, caller_token: str, admin_id: str) -> None:
    caller = _require_super(db, caller_token)
    target_id = (admin_id or "").strip()
    if target_id == caller.id:
        raise ValidationError("Admins cannot delete themselves")
    a = db.get(Admin, target_id)
    if a is None:
        raise NotFoundError(f"Admin {admin_id} not found")
    db.delete(a)
    db.commit()
    logger.info("admin %s deleted by %s", target_id, caller.id)


def bootstrap_super_admin(db: Session) -> Optional[Admin]:
    """
    Create the configured super admin if the directory is empty.
    Returns the created admin, or None when nothing was done.
    """
    if not ADMIN_ID or not (ADMIN_PASSWORD_HASH or ADMIN_PASSWORD):
        return None
    if db.execute(select(Admin.id).limit(1)).first() is not None:
        return None
    a = Admin(
        id=ADMIN_ID,
        password_hash=ADMIN_PASSWORD_HASH or hash_password(ADMIN_PASSWORD),
        is_super=True,
        perm_recharge=True,
        perm_withdraw=True,
        perm_buysell=True,
    )
    db.add(a)
    db.commit()
    logger.info("bootstrapped super admin %s", a.id)
    return a
