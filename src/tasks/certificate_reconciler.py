# coding: utf-8
"""
Certificate Reconciler Cron Job - repairs issuance the event path missed.

Issues every automatic certificate whose condition holds but which was never
granted (a failed trigger check, a rule created after the fact), then drains
pending IPFS pin / mint tasks.

Run: python -m src.tasks.certificate_reconciler

Crontab (every 30 minutes):
    */30 * * * * cd /path && .venv/bin/python -m src.tasks.certificate_reconciler
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from loguru import logger

from config.config import validate_config
from config.logging import setup_logging
from config.sentry import init_sentry
from src.database.engine import dispose_engine, get_session_maker
from src.services.certificates.container import build_certificate_services


async def main():
    """
    Main cron job entry point
    """
    setup_logging()
    init_sentry()
    validate_config()

    logger.info("=" * 80)
    logger.info("Certificate Reconciler Cron Job - Starting")
    logger.info("=" * 80)

    services = build_certificate_services()
    SessionLocal = get_session_maker()

    try:
        async with SessionLocal() as session:
            report = await services.sweeper.sweep_all(session)

        logger.info("=" * 80)
        logger.info("Certificate Reconciler Cron Job - Results:")
        logger.info(f"  - Rule/user pairs checked: {report.checked}")
        logger.info(f"  - Certificates issued: {report.issued}")
        logger.info(f"  - Issuance failures: {report.failed}")
        logger.info(f"  - Instances processed: {report.side_effects.instances}")
        logger.info(f"  - Pinned: {report.side_effects.pinned}")
        logger.info(f"  - Minted: {report.side_effects.minted}")
        logger.info(f"  - Side effect errors: {report.side_effects.errors}")
        logger.info("=" * 80)

    except Exception as e:
        logger.error(f"Error in certificate reconciler cron job: {e}", exc_info=True)
        raise
    finally:
        await services.shutdown()
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
