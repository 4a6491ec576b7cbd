"""API key dependency.

When SNAPLABEL_API_KEY is set, every /api/v1 route except the health check
requires ``Authorization: Bearer <key>``.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from snaplabel.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

PUBLIC_PATHS = frozenset({"/api/v1/health"})


def _key_matches(expected: str, credentials: HTTPAuthorizationCredentials | None) -> bool:
    if credentials is None:
        return False
    return secrets.compare_digest(credentials.credentials.encode(), expected.encode())


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Reject the request with 401 unless it carries the configured key."""
    settings: Settings = request.app.state.settings
    if settings.api_key is None or request.url.path in PUBLIC_PATHS:
        return

    if not _key_matches(settings.api_key, credentials):
        logger.info("Rejected unauthenticated request to %s", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
