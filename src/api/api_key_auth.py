# coding: utf-8
"""
Admin API Key Authentication

Admin endpoints (sweep, batch mint, revocation, rule management) require
the shared key from ADMIN_API_KEY.

Usage:
    @router.post("/admin-endpoint", dependencies=[Depends(verify_admin_key)])
    async def protected():
        pass
"""
import secrets
from typing import Optional

from fastapi import Header, HTTPException

from loguru import logger
from config import config


async def verify_admin_key(
    x_admin_key: Optional[str] = Header(None, description="Admin API key")
) -> str:
    """
    Verify admin key from request header

    Headers:
        X-Admin-Key: your-admin-key

    Raises:
        HTTPException 401: Missing or invalid key
        HTTPException 500: ADMIN_API_KEY not configured
    """
    if not x_admin_key:
        logger.warning("Admin key missing in request")
        raise HTTPException(
            status_code=401,
            detail="Missing admin key. Provide X-Admin-Key header."
        )

    if not config.ADMIN_API_KEY:
        logger.error("ADMIN_API_KEY not configured in .env")
        raise HTTPException(
            status_code=500,
            detail="Admin authentication not configured"
        )

    if not secrets.compare_digest(x_admin_key, config.ADMIN_API_KEY):
        logger.warning(f"Invalid admin key attempt: {x_admin_key[:4]}...")
        raise HTTPException(
            status_code=401,
            detail="Invalid admin key"
        )

    return x_admin_key
