"""
Shared FastAPI dependencies.

get_current_user validates the Supabase access token from the
Authorization header and returns the JWT-style user dict routers read
(`sub`, `id`, `email`).
"""

import logging
from typing import Optional, Dict, Any

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.database import get_supabase_service

logger = logging.getLogger(__name__)

auth_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> Dict[str, Any]:
    """Resolve the authenticated user from a Supabase Bearer token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer token")

    try:
        response = get_supabase_service().auth.get_user(credentials.credentials)
    except Exception as e:
        logger.warning(f"Token validation failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = response.user if response else None
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return {
        "sub": str(user.id),
        "id": str(user.id),
        "email": user.email,
    }


def get_user_id(current_user: Dict[str, Any]) -> str:
    user_id = current_user.get("sub") or current_user.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid user")
    return str(user_id)
