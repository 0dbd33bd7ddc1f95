# kbase/dependencies.py
"""
FastAPI dependency injection functions for authentication.

Usage:
    from fastapi import Depends
    from kbase.dependencies import get_current_user
    from kbase.core.database.models import User

    @router.get("/protected")
    async def protected_endpoint(user: User = Depends(get_current_user)):
        return {"uid": user.uid}
"""

import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.core.auth.token_service import decode_token
from kbase.core.database.base import get_db
from kbase.core.database.models import User

logger = logging.getLogger("kbase.dependencies")

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the acting user from a JWT Bearer token.

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired, or
            names an unknown user
    """
    if not credentials:
        raise _unauthorized("Missing authentication credentials")

    try:
        payload = decode_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")

    if payload.get("type", "access") != "access":
        raise _unauthorized("Invalid token type. Expected access token.")

    uid = payload.get("sub")
    if not uid:
        raise _unauthorized("Token payload missing user ID")

    result = await session.execute(select(User).where(User.uid == uid))
    user = result.scalar_one_or_none()
    if user is None:
        raise _unauthorized("User not found")

    logger.debug(f"User authenticated via JWT: {user.uid}")
    return user
