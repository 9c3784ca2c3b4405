from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Header, Request
from passlib.hash import bcrypt

import config
from errors import AuthenticationError, PermissionDeniedError

ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    return bcrypt.using(rounds=config.BCRYPT_ROUNDS).hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return bcrypt.verify(password, hashed)


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["id"]),
        "kind": user.get("kind"),
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=config.JWT_EXP_MIN),
    }
    return jwt.encode(payload, config.SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Raises a PyJWT error for expired, immature or malformed tokens."""
    return jwt.decode(token, config.SECRET_KEY, algorithms=[ALGORITHM])


def user_from_token(token: str, users) -> dict:
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Authentication failed: Invalid token")
    user = users.find_by_id(user_id)
    if user is None:
        raise AuthenticationError("Authentication failed: User no longer exists")
    if user.get("accountStatus") in ("suspended", "deactivated"):
        raise AuthenticationError(f"Account is {user['accountStatus']}")
    return user


def get_current_user(request: Request, authorization: Optional[str] = Header(None)) -> dict:
    if not authorization:
        raise AuthenticationError("Authentication required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Authentication failed: Invalid authorization header")
    users = (getattr(request.app.state, "services", None) or {}).get("userService")
    if users is None:
        raise RuntimeError("Database not configured")
    user = user_from_token(token.strip(), users.repository)
    request.state.user = user
    return user


def require_admin(user: dict) -> dict:
    if user.get("kind") != "Administrator":
        raise PermissionDeniedError("Administrator access required")
    return user
