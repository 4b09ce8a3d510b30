"""
shared/middleware/auth.py
Request authentication. Access tokens come from the identity provider;
this module only verifies them, consults the Redis deny-list and loads
the matching account. Roles are exclusive: a provider is never a client.
"""

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import User, UserRole
from shared.utils.security import verify_access_token

bearer = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _resolve_subject(token: str, redis) -> uuid.UUID:
    """Token -> user id. Raises a 401 for anything that is not a live access token."""
    try:
        claims = verify_access_token(token)
        subject = uuid.UUID(str(claims["sub"]))
    except (JWTError, KeyError, ValueError):
        raise _unauthorized("Invalid or expired token")

    jti = claims.get("jti")
    if jti and await RedisCache(redis).is_token_revoked(jti):
        raise _unauthorized("Token has been revoked")
    return subject


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
) -> User:
    if credentials is None:
        raise _unauthorized("Authentication required")

    user = await db.get(User, await _resolve_subject(credentials.credentials, redis))
    if user is None:
        raise _unauthorized("Unknown account")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")
    return user


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
) -> Optional[User]:
    """Public endpoints personalise output for a signed-in caller but never reject."""
    if credentials is None:
        return None
    try:
        subject = await _resolve_subject(credentials.credentials, redis)
    except HTTPException:
        return None
    user = await db.get(User, subject)
    return user if user is not None and user.is_active else None


class RoleRequired:
    """Dependency that admits only the listed roles."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(self, current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in self.roles:
            allowed = ", ".join(r.value for r in self.roles)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This action requires role: {allowed}",
            )
        return current_user


require_client = RoleRequired(UserRole.CLIENT)
require_provider = RoleRequired(UserRole.PROVIDER)
require_admin = RoleRequired(UserRole.ADMIN)
