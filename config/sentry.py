# coding: utf-8
"""
Sentry configuration for error monitoring and tracking
"""
import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from loguru import logger

from config.config import SENTRY_DSN, ENVIRONMENT


def init_sentry() -> None:
    """
    Initialize Sentry SDK for error monitoring

    Features:
    - Automatic error capture for API handlers and background side effects
    - Database query and Pinata request breadcrumbs
    - Environment separation (dev/prod)
    """
    if not SENTRY_DSN:
        logger.warning("SENTRY_DSN not configured - error monitoring disabled")
        return

    try:
        sentry_sdk.init(
            dsn=SENTRY_DSN,
            environment=ENVIRONMENT,
            integrations=[
                FastApiIntegration(),
                AsyncioIntegration(),
                SqlalchemyIntegration(),
                AioHttpIntegration(),
            ],
            traces_sample_rate=0.1 if ENVIRONMENT == "production" else 1.0,
            sample_rate=1.0,
            attach_stacktrace=True,
            send_default_pii=False,
            max_breadcrumbs=50,
            before_send=before_send_hook,
        )

        logger.info(f"Sentry initialized successfully (Environment: {ENVIRONMENT})")

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


def before_send_hook(event, hint):
    """
    Strip credentials from outgoing events.

    The admin key and the chain signer key must never leave the process.
    """
    if event.get('request'):
        headers = event['request'].get('headers', {})
        for header in ('Authorization', 'X-Admin-Key'):
            if header in headers:
                headers[header] = '[Filtered]'

    extra = event.get('extra') or {}
    for key in list(extra):
        if 'private_key' in key.lower() or 'secret' in key.lower():
            extra[key] = '[Filtered]'

    return event
