# coding: utf-8
"""
Certificate service container

Composition root for the pipeline: one instance is built at API startup
and stored on app.state; cron tasks build their own.
"""
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request
from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.database.engine import get_session_maker
from src.services.certificates.chain_sync import ChainSyncService
from src.services.certificates.config import CertificateConfig, get_config
from src.services.certificates.eligibility import EligibilityEvaluator
from src.services.certificates.issuance import IssuanceCoordinator
from src.services.certificates.outbox import OutboxProcessor, SideEffectDispatcher
from src.services.certificates.sweep import ReconciliationSweep
from src.services.ipfs_service import IPFSService
from src.services.ledger_service import LedgerService


@dataclass
class CertificateServices:
    config: CertificateConfig
    ipfs: IPFSService
    ledger: LedgerService
    evaluator: EligibilityEvaluator
    outbox: OutboxProcessor
    dispatcher: SideEffectDispatcher
    issuer: IssuanceCoordinator
    sweeper: ReconciliationSweep
    chain_sync: ChainSyncService

    async def shutdown(self) -> None:
        """Let background side effects finish before the engine goes away."""
        await self.dispatcher.wait_idle()


def build_certificate_services(
    config: Optional[CertificateConfig] = None,
    session_maker: Callable[[], async_sessionmaker] = get_session_maker,
    ipfs: Optional[IPFSService] = None,
    ledger: Optional[LedgerService] = None,
) -> CertificateServices:
    """Wire the certificate pipeline. Clients can be swapped for tests."""
    config = config or get_config()
    ipfs = ipfs or IPFSService(config.content_store)
    ledger = ledger or LedgerService(config.ledger)

    evaluator = EligibilityEvaluator()
    outbox = OutboxProcessor(ipfs, ledger)
    dispatcher = SideEffectDispatcher(session_maker, outbox)
    issuer = IssuanceCoordinator(evaluator, outbox, config.issuance, dispatcher)
    sweeper = ReconciliationSweep(
        evaluator, issuer, outbox, config.issuance.outbox_drain_limit, dispatcher
    )
    chain_sync = ChainSyncService(ledger, outbox, config.ledger)

    logger.info(
        f"Certificate services ready | IPFS: {'on' if ipfs.is_configured else 'off'} | "
        f"Ledger: {'on' if ledger.is_configured else 'off'}"
    )

    return CertificateServices(
        config=config,
        ipfs=ipfs,
        ledger=ledger,
        evaluator=evaluator,
        outbox=outbox,
        dispatcher=dispatcher,
        issuer=issuer,
        sweeper=sweeper,
        chain_sync=chain_sync,
    )


def get_certificate_services(request: Request) -> CertificateServices:
    """FastAPI dependency"""
    return request.app.state.certificates
