"""Authentication dependencies for FastAPI."""

import asyncio
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.chat_errors import WARM_AUTH_MESSAGE

logger = logging.getLogger(__name__)

# HTTP Bearer scheme for Authorization header
security = HTTPBearer(auto_error=False)


class AuthContext:
    """Authenticated caller for one request."""

    def __init__(self, user_id: str, token: str, email: Optional[str] = None):
        self.user_id = user_id
        self.token = token
        self.email = email


def _verify_token(token: str) -> Optional[AuthContext]:
    from app.db.supabase_client import get_supabase

    # Validates the JWT signature and expiration
    auth_response = get_supabase().auth.get_user(token)
    if not auth_response or not auth_response.user:
        return None
    user = auth_response.user
    return AuthContext(user_id=str(user.id), token=token, email=getattr(user, "email", None))


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[AuthContext]:
    """
    Resolve the caller from a Supabase JWT (Bearer auth).

    Returns None if no valid auth is present.
    """
    if not credentials or not credentials.credentials:
        return None

    try:
        return await asyncio.to_thread(_verify_token, credentials.credentials)
    except Exception as e:
        logger.warning(f"Auth error: {e}")
        return None


async def require_auth(
    auth: Optional[AuthContext] = Depends(get_current_user),
) -> AuthContext:
    """Require authentication. Raises 401 with a warm message if not authenticated."""
    if not auth:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=WARM_AUTH_MESSAGE,
            headers={"WWW-Authenticate": "Bearer"},
        )
    return auth
