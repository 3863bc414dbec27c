"""Bearer token → operator identity + role checks for write endpoints.

Tokens are issued by the auth service (HS256, shared JWT_SECRET). Payload:
{"sub": <user_id>, "username": "...", "role": "admin|dispatcher|programmer", "exp": ...}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings

logger = logging.getLogger("equipment.security")

_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: int | None
    username: str
    role: str


def decode_token(token: str) -> CurrentUser:
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(401, "Токен истек")
    except jwt.InvalidTokenError:
        raise HTTPException(401, "Недействительный токен")

    sub = payload.get("sub")
    try:
        user_id = int(sub) if sub is not None else None
    except (TypeError, ValueError):
        user_id = None
    return CurrentUser(
        id=user_id,
        username=str(payload.get("username") or sub or ""),
        role=str(payload.get("role") or ""),
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> CurrentUser:
    if credentials is None or not credentials.credentials:
        raise HTTPException(401, "Токен доступа не предоставлен")
    return decode_token(credentials.credentials)


def require_roles(*roles: str):
    """Dependency factory: 403 unless the caller's role is one of ``roles``."""

    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            logger.info("User %s (%s) denied, needs one of %s", user.username, user.role, roles)
            raise HTTPException(403, "Недостаточно прав доступа")
        return user

    return _check
