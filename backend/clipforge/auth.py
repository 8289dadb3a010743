"""
Request identity.

The identity provider sits in front of this service and forwards the
authenticated user's stable id in ``X-User-Id``. Cron endpoints use a
shared bearer secret instead.
"""
from __future__ import annotations

import secrets

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .settings import get_settings

security = HTTPBearer(auto_error=False)


def get_current_user(x_user_id: str | None = Header(default=None)) -> str:
    """Dependency returning the caller's user id; 401 when absent."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if len(user_id) > 64:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user id")
    return user_id


def require_cron_secret(credentials: HTTPAuthorizationCredentials | None = Depends(security)) -> bool:
    """Dependency for externally triggered jobs (``Authorization: Bearer $CRON_SECRET``)."""
    expected = get_settings().cron_secret
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="CRON_SECRET not configured")
    if not credentials or not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return True


CurrentUser = Depends(get_current_user)
