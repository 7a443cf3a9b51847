"""Credential extraction for the calendar API.

Calendar routes act on behalf of a user who has already authorized the
provider.  The provider access token travels as the bearer token; the
caller's identity travels in headers:

  Authorization: Bearer <provider access token>   required, else 401
  X-Organization-Id                               optional
  X-User-Id                                       optional
  X-User-Email                                    optional

The provider is not known until the route has read its body or query, so
the credentials returned here carry an empty ``provider`` and routes bind it
with ``for_provider()``.
"""

from __future__ import annotations

import logging

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from calendar_hub.models import CalendarCredentials

log = logging.getLogger("calendar_hub.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_credentials(
    bearer: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    organization_id: str = Header(default="", alias="X-Organization-Id"),
    user_id: str = Header(default="", alias="X-User-Id"),
    user_email: str = Header(default="", alias="X-User-Email"),
) -> CalendarCredentials:
    """FastAPI dependency: turn the bearer token and identity headers into credentials."""
    if bearer is None or not bearer.credentials:
        log.info("Rejected calendar request without bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return CalendarCredentials(
        provider="",
        access_token=bearer.credentials,
        email=user_email,
        organization_id=organization_id,
        user_id=user_id,
    )


def for_provider(credentials: CalendarCredentials, provider: str) -> CalendarCredentials:
    return credentials.model_copy(update={"provider": provider})
