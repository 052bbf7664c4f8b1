"""
Shared-secret guard for the cron endpoints.
"""

import hmac

import structlog
from fastapi import HTTPException, Request

from config import get_settings

logger = structlog.get_logger("security")


async def verify_cron_secret(request: Request) -> None:
    """`Authorization: Bearer <CRON_SECRET>`; runs before any cron business logic."""
    secret = get_settings().CRON_SECRET
    if not secret:
        logger.error("CRON_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Cron secret not configured")

    header = request.headers.get("authorization", "")
    expected = f"Bearer {secret}"
    if not hmac.compare_digest(header.encode(), expected.encode()):
        logger.warning("Cron request rejected", path=request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")
