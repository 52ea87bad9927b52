# coding: utf-8
"""
Rate limiting for public trigger endpoints

Usage:
    @router.post("/public-endpoint")
    @limiter.limit(trigger_rate_limit)
    async def endpoint(request: Request):
        pass
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from config import config

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def trigger_rate_limit() -> str:
    """Read per request, so TRIGGER_RATE_LIMIT changes apply without a restart"""
    return config.TRIGGER_RATE_LIMIT
