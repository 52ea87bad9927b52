# coding: utf-8
"""
Chain-sync backfill

Mints certificates that were granted but never reached the ledger. Two
custody paths exist:
- backfill(): holder custody, mints to the holder's bound wallet
- backfill_batch(): system custody, mints to the configured system wallet

Both are idempotent: an existing ledger record is returned as success.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import crud
from src.database.models import CertificateInstance, CustodyModel, LedgerRecord, SideEffectType
from src.services.certificates.config import LedgerConfig
from src.services.certificates.documents import build_certificate_document, placeholder_content_hash
from src.services.certificates.errors import (
    CertificateNotFoundError,
    CertificateServiceError,
    LedgerUnavailableError,
    MintFailedError,
    NoWalletError,
    NotCertificateHolderError,
)
from src.services.certificates.outbox import OutboxProcessor
from src.services.ipfs_service import ContentStoreError
from src.services.ledger_service import LedgerError, LedgerService


@dataclass
class BackfillResult:
    instance_id: int
    certificate_number: str
    tx_hash: str
    token_id: Optional[str]
    block_number: Optional[int]
    already_on_chain: bool = False

    @classmethod
    def from_record(cls, record: LedgerRecord, already_on_chain: bool) -> "BackfillResult":
        return cls(
            instance_id=record.instance_id,
            certificate_number=record.certificate_number,
            tx_hash=record.tx_hash,
            token_id=record.token_id,
            block_number=record.block_number,
            already_on_chain=already_on_chain,
        )


@dataclass
class BatchBackfillReport:
    results: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)


class ChainSyncService:
    """
    Backfills missing ledger records

    Features:
    - Holder-wallet backfill for a single certificate
    - System-wallet batch mint with per-certificate isolation
    - Lazy content pin with placeholder fallback
    - Ledger error translation into user-facing messages
    """

    def __init__(self, ledger: LedgerService, outbox: OutboxProcessor, config: LedgerConfig):
        self.ledger = ledger
        self.outbox = outbox
        self.config = config

    async def backfill(
        self,
        session: AsyncSession,
        instance_id: int,
        requesting_user_id: Optional[int] = None,
    ) -> BackfillResult:
        """
        Mint one certificate to its holder's wallet

        Raises:
            CertificateNotFoundError: Unknown certificate instance
            NotCertificateHolderError: Requesting user does not hold it
            NoWalletError: Holder has no bound wallet
            LedgerUnavailableError: Ledger not configured
            MintFailedError: Ledger rejected or failed the mint
        """
        instance = await session.get(CertificateInstance, instance_id, populate_existing=True)
        if instance is None:
            raise CertificateNotFoundError(f"Certificate {instance_id} not found")

        existing = await crud.get_ledger_record(session, instance_id)
        if existing is not None:
            return BackfillResult.from_record(existing, already_on_chain=True)

        grant = await crud.get_grant_by_instance(session, instance_id)
        if grant is not None and requesting_user_id is not None and grant.user_id != requesting_user_id:
            raise NotCertificateHolderError("Certificate belongs to another user")

        owner_id = grant.user_id if grant is not None else requesting_user_id
        if owner_id is None:
            raise CertificateServiceError("Unable to determine certificate owner")

        wallet = await crud.get_wallet_address(session, owner_id)
        if wallet is None:
            raise NoWalletError(owner_id)

        return await self._mint(session, instance, wallet, CustodyModel.HOLDER)

    async def backfill_batch(self, session: AsyncSession, instance_ids: List[int]) -> BatchBackfillReport:
        """
        Mint many certificates to the system wallet

        Each id is handled on its own; a failure is reported and the batch
        continues.
        """
        report = BatchBackfillReport()

        for instance_id in instance_ids:
            try:
                instance = await session.get(CertificateInstance, instance_id, populate_existing=True)
                if instance is None:
                    raise CertificateNotFoundError(f"Certificate {instance_id} not found")

                existing = await crud.get_ledger_record(session, instance_id)
                if existing is not None:
                    report.results.append({
                        "id": instance_id,
                        "status": "already_minted",
                        "tx_hash": existing.tx_hash,
                        "token_id": existing.token_id,
                    })
                    continue

                result = await self._mint(
                    session, instance, self.config.system_wallet or None, CustodyModel.SYSTEM
                )
                report.results.append({
                    "id": instance_id,
                    "status": "success",
                    "tx_hash": result.tx_hash,
                    "token_id": result.token_id,
                })
            except CertificateServiceError as e:
                await session.rollback()
                report.errors.append({"id": instance_id, "error": e.message})
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Batch mint of certificate {instance_id} failed on database: {e}")
                report.errors.append({"id": instance_id, "error": "Database error"})

        logger.info(
            f"Batch mint finished: {len(report.results)} ok, {len(report.errors)} failed "
            f"of {len(instance_ids)}"
        )
        return report

    async def _ensure_content_hash(self, session: AsyncSession, instance: CertificateInstance) -> str:
        if instance.content_hash:
            return instance.content_hash

        try:
            return await self.outbox.pin_instance(session, instance)
        except ContentStoreError as e:
            document = build_certificate_document(instance)
            instance.content_hash = placeholder_content_hash(document)
            instance.content_hash_is_placeholder = True
            await self.outbox.complete_tasks(
                session, instance.id, SideEffectType.PIN, note=f"placeholder hash: {e}"
            )
            await session.flush()
            logger.warning(
                f"Content pin failed for {instance.certificate_number}, "
                f"minting with placeholder hash {instance.content_hash}"
            )
            return instance.content_hash

    async def _mint(
        self,
        session: AsyncSession,
        instance: CertificateInstance,
        recipient: Optional[str],
        custody: CustodyModel,
    ) -> BackfillResult:
        content_hash = await self._ensure_content_hash(session, instance)
        # Keep the content hash even if the mint below fails
        await session.commit()

        if not self.ledger.is_configured:
            raise LedgerUnavailableError("Blockchain service is not configured")

        try:
            receipt = await self.outbox.mint_or_recover(instance, content_hash, recipient)
        except LedgerError as e:
            logger.error(f"Mint of certificate {instance.certificate_number} failed: {e}")
            raise MintFailedError(str(e), terminal=e.terminal) from e

        if custody == CustodyModel.HOLDER and recipient and receipt.owner_address.lower() != recipient.lower():
            custody = CustodyModel.SYSTEM

        record = await self.outbox.record_mint(session, instance, receipt, custody)
        return BackfillResult.from_record(record, already_on_chain=False)
