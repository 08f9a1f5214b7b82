"""
FastAPI Security Dependencies
Dependency injection functions for caller identity and machine-to-machine secrets
"""

import logging
import secrets

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from palette.config import Config
from palette.utils.exceptions import APIExceptions

logger = logging.getLogger(__name__)

# HTTP Bearer security scheme with auto_error=False to allow custom error handling
security = HTTPBearer(auto_error=False)

USER_ID_HEADER = "X-User-Id"
INTERNAL_KEY_HEADER = "X-Internal-Key"


async def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
) -> str:
    """
    Verified identity key of the caller.

    Authentication happens upstream; this service only trusts the header the
    gateway sets after verifying the session.
    """
    if not x_user_id or not x_user_id.strip():
        raise APIExceptions.unauthorized()
    return x_user_id.strip()


async def get_optional_user_id(
    x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
) -> str | None:
    if not x_user_id or not x_user_id.strip():
        return None
    return x_user_id.strip()


def get_client_ip(request: Request) -> str | None:
    """First X-Forwarded-For hop, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else None


def _matches_secret(provided: str | None, expected: str | None, name: str) -> bool:
    if not expected:
        logger.error(f"{name} is not configured")
        return False
    if not provided:
        return False
    # Constant-time comparison to prevent timing attacks
    return secrets.compare_digest(provided.encode(), expected.encode())


async def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    """Bearer CRON_SECRET, used by the scheduler and email triggers."""
    token = credentials.credentials if credentials else None
    if not _matches_secret(token, Config.CRON_SECRET, "CRON_SECRET"):
        raise APIExceptions.unauthorized()


async def require_internal_key(
    x_internal_key: str | None = Header(default=None, alias=INTERNAL_KEY_HEADER),
) -> None:
    """Shared INTERNAL_API_KEY for service-to-service calls."""
    if not _matches_secret(x_internal_key, Config.INTERNAL_API_KEY, "INTERNAL_API_KEY"):
        raise APIExceptions.unauthorized("Invalid internal API key")
