import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, Header
from pymongo.database import Database

from . import config
from .database import get_db, object_id
from .errors import Forbidden, InvalidInput, Unauthorized

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Identity of the caller, passed explicitly into every service call."""

    user_id: str
    email: str
    name: str
    is_admin: bool = False


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def check_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode(), password_hash.encode())


def create_token(subject: str, email: str, name: str, is_admin: bool = False) -> str:
    payload = {
        "sub": subject,
        "email": email,
        "name": name,
        "is_admin": is_admin,
        "exp": datetime.now(timezone.utc) + timedelta(days=config.TOKEN_TTL_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGO)


def check_admin_credentials(username: str, password: str) -> bool:
    if not config.ADMIN_PASSWORD:
        return False
    return hmac.compare_digest(username, config.ADMIN_USERNAME) and hmac.compare_digest(
        password, config.ADMIN_PASSWORD
    )


def _read_token(authorization: Optional[str], x_auth_token: Optional[str]) -> Optional[str]:
    if authorization:
        parts = authorization.split(" ")
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
        return None
    return x_auth_token


def get_current_user(
    authorization: Optional[str] = Header(None),
    x_auth_token: Optional[str] = Header(None),
    db: Database = Depends(get_db),
) -> Optional[dict]:
    """Resolve the bearer token to a user document, or None when absent or invalid.

    Admin tokens are not backed by a user document; they resolve to a synthetic
    ``{"is_admin": True}`` record.
    """
    token = _read_token(authorization, x_auth_token)
    if not token:
        return None
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    except jwt.PyJWTError:
        return None
    if payload.get("is_admin"):
        return {"_id": payload["sub"], "email": payload.get("email", ""), "name": payload.get("name", ""), "is_admin": True}
    subject = payload.get("sub")
    if not subject:
        return None
    try:
        user_oid = object_id(subject)
    except InvalidInput:
        logger.warning("Rejected token with unusable subject %r", subject)
        return None
    return db["user"].find_one({"_id": user_oid})


def require_user(user: Optional[dict] = Depends(get_current_user)) -> AuthContext:
    if not user:
        raise Unauthorized("Authentication required")
    if user.get("is_banned"):
        raise Forbidden("Account suspended")
    return AuthContext(
        user_id=str(user["_id"]),
        email=user.get("email", ""),
        name=user.get("name", ""),
        is_admin=bool(user.get("is_admin", False)),
    )


def require_admin(user: Optional[dict] = Depends(get_current_user)) -> AuthContext:
    if not user:
        raise Unauthorized("Authentication required")
    if not user.get("is_admin"):
        raise Forbidden("Admin only")
    return AuthContext(user_id=str(user["_id"]), email=user.get("email", ""), name=user.get("name", ""), is_admin=True)
