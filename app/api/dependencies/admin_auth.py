"""
Store API key check.

Guards everything under /api (rewards history, settings, wallet, debug).
Webhooks are authenticated by their platform signature instead.
"""
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)


async def require_admin_api_key(
    request: Request,
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """401 when the header is missing, 403 when it does not match or no key is configured"""
    if not settings.ADMIN_API_KEY:
        logger.warning("Store API locked: ADMIN_API_KEY is not set", extra_data={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Store API is disabled on this server",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Admin-API-Key header",
        )

    if not secrets.compare_digest(api_key.encode(), settings.ADMIN_API_KEY.encode()):
        logger.warning("מפתח API שגוי", extra_data={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
