"""HTTP Basic Auth for the web API.

Single shared password from WEB_PASSWORD. The username only names the
conversation ("web:<username>") that owns pending duplicate decisions.
"""

from __future__ import annotations

import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from medcard.config import settings

security = HTTPBasic()


async def verify_user(
    credentials: HTTPBasicCredentials = Depends(security),  # noqa: B008
) -> str:
    """FastAPI dependency: returns the username, raises 401 on a wrong password."""
    expected = settings.security.web_password
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="WEB_PASSWORD not configured",
        )

    password_ok = secrets.compare_digest(
        credentials.password.encode("utf-8"),
        expected.encode("utf-8"),
    )
    if not password_ok:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )

    return credentials.username


def web_key(username: str) -> str:
    return f"web:{username or 'user'}"
