"""Request authentication dependencies.

Only token verification lives here; tokens are issued by the account service.
"""

import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AuthenticationError, PermissionDenied
from ..models import User, get_session

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> int:
    """Return the user id carried by ``token``.

    Raises:
        AuthenticationError: bad signature, expired, or no user id claim
    """
    if not secret:
        logger.error("JWT secret is not configured; rejecting token")
        raise AuthenticationError("Token verification failed")
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError as e:
        raise AuthenticationError(f"Invalid token: {e}")

    subject = claims.get("sub", claims.get("userId"))
    try:
        return int(subject)
    except (TypeError, ValueError):
        raise AuthenticationError("Token does not identify a user")


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
) -> User:
    """Resolve the Bearer token to an active user, or fail with 401."""
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise AuthenticationError('Invalid authorization header format. Use "Bearer <token>"')

    config = request.app.state.config
    user_id = decode_token(
        credentials.credentials,
        config.get("auth.jwt_secret", ""),
        config.get("auth.jwt_algorithm", "HS256"),
    )

    try:
        user = await session.get(User, user_id)
    except SQLAlchemyError as e:
        logger.error(f"Failed to load user {user_id}: {e.__class__.__name__}")
        raise AuthenticationError("Token verification failed")

    if user is None:
        raise AuthenticationError("User not found")
    if not user.is_active:
        raise AuthenticationError("Account is deactivated")
    return user


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
) -> Optional[User]:
    """Like get_current_user, but anonymous or invalid callers yield None."""
    if credentials is None:
        return None
    try:
        return await get_current_user(request, credentials, session)
    except AuthenticationError as e:
        logger.debug(f"Ignoring invalid credentials on public route: {e.message}")
        return None


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise PermissionDenied("Admin access required")
    return user
