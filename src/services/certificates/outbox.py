# coding: utf-8
"""
Side-effect outbox for issued certificates

Issuance writes pending pin / mint rows in the same transaction as the
grant. They are processed right after commit by SideEffectDispatcher and,
if that did not finish, by the reconciliation sweep via OutboxProcessor.drain().

Features:
- Content pin with content_hash write-back
- Mint to the holder's bound wallet once the content is pinned
- Terminal ledger errors park the task as failed
- Ledger record bookkeeping shared with chain-sync backfill
"""
import asyncio
from datetime import datetime, UTC
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database import crud
from src.database.models import (
    CertificateInstance,
    CustodyModel,
    ChainSyncState,
    LedgerRecord,
    SideEffectStatus,
    SideEffectTask,
    SideEffectType,
    UserCertificate,
)
from src.services.certificates.documents import (
    build_certificate_document,
    document_filename,
    to_content_uri,
)
from src.services.ipfs_service import ContentStoreError, IPFSService
from src.services.ledger_service import DuplicateCertificateError, LedgerError, LedgerService, MintReceipt


@dataclass
class SideEffectReport:
    """What one processing pass achieved for an instance"""
    instance_id: int
    pinned: bool = False
    minted: bool = False
    errors: List[str] = field(default_factory=list)


@dataclass
class DrainReport:
    instances: int = 0
    pinned: int = 0
    minted: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            "instances": self.instances,
            "pinned": self.pinned,
            "minted": self.minted,
            "errors": self.errors,
        }


class OutboxProcessor:
    """Runs pending pin / mint tasks"""

    def __init__(self, ipfs: IPFSService, ledger: LedgerService):
        self.ipfs = ipfs
        self.ledger = ledger

    # ===========================
    # TASK BOOKKEEPING
    # ===========================

    async def enqueue(self, session: AsyncSession, instance_id: int, with_mint: bool) -> None:
        """Add pending tasks for a new instance. Does not commit."""
        session.add(SideEffectTask(instance_id=instance_id, task_type=SideEffectType.PIN.value))
        if with_mint:
            session.add(SideEffectTask(instance_id=instance_id, task_type=SideEffectType.MINT.value))
        await session.flush()

    async def complete_tasks(
        self,
        session: AsyncSession,
        instance_id: int,
        task_type: SideEffectType,
        note: Optional[str] = None,
    ) -> None:
        """Mark an instance's pending task of this type as done (if any)."""
        await session.execute(
            update(SideEffectTask)
            .where(
                SideEffectTask.instance_id == instance_id,
                SideEffectTask.task_type == task_type.value,
                SideEffectTask.status == SideEffectStatus.PENDING.value,
            )
            .values(status=SideEffectStatus.DONE.value, last_error=note)
            .execution_options(synchronize_session=False)
        )

    async def _defer(self, session: AsyncSession, task: SideEffectTask, reason: str) -> None:
        """Leave a task pending and move it behind the others in the drain order."""
        logger.debug(reason)
        task.updated_at = datetime.now(UTC)
        await session.commit()

    @staticmethod
    def _record_failure(task: SideEffectTask, error: Exception, terminal: bool) -> None:
        task.attempts += 1
        task.last_error = str(error)[:1000]
        if terminal:
            task.status = SideEffectStatus.FAILED.value

    # ===========================
    # PIN / MINT
    # ===========================

    async def pin_instance(self, session: AsyncSession, instance: CertificateInstance) -> str:
        """
        Pin the certificate document and store its hash. Does not commit.

        Raises:
            ContentStoreError: Pinning failed
        """
        document = build_certificate_document(instance)
        pin = await self.ipfs.pin_json(document, document_filename(instance.certificate_number))

        instance.content_hash = pin.ipfs_hash
        instance.content_hash_is_placeholder = False
        await self.complete_tasks(session, instance.id, SideEffectType.PIN)
        await session.flush()

        return pin.ipfs_hash

    async def mint_or_recover(
        self,
        instance: CertificateInstance,
        content_hash: str,
        recipient: Optional[str],
    ) -> MintReceipt:
        """
        Mint the certificate, or take over its token if the number is already on chain

        Raises:
            LedgerError (or a terminal subclass)
        """
        try:
            return await self.ledger.mint_certificate(
                instance.certificate_number,
                to_content_uri(content_hash),
                recipient=recipient,
            )
        except DuplicateCertificateError:
            existing = await self.ledger.recover_certificate(instance.certificate_number, recipient=recipient)
            if existing is None:
                raise
            return existing

    async def record_mint(
        self,
        session: AsyncSession,
        instance: CertificateInstance,
        receipt: MintReceipt,
        custody: CustodyModel,
    ) -> LedgerRecord:
        """
        Store a confirmed mint and commit

        The token exists on chain at this point, so a failed commit is logged
        with the transaction hash before the error propagates.
        """
        record = LedgerRecord(
            instance_id=instance.id,
            certificate_number=instance.certificate_number,
            token_id=receipt.token_id,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            content_hash=instance.content_hash,
            owner_address=receipt.owner_address,
            custody=custody.value,
        )
        session.add(record)

        await session.execute(
            update(UserCertificate)
            .where(UserCertificate.instance_id == instance.id)
            .values(chain_status=ChainSyncState.MINTED.value)
            .execution_options(synchronize_session=False)
        )
        await self.complete_tasks(session, instance.id, SideEffectType.MINT)

        try:
            await session.commit()
        except SQLAlchemyError:
            logger.critical(
                f"Certificate {instance.certificate_number} minted on chain "
                f"(tx={receipt.tx_hash}, token_id={receipt.token_id}) but the ledger record was not saved"
            )
            raise

        return record

    async def _run_pin(
        self, session: AsyncSession, instance: CertificateInstance, task: SideEffectTask, report: SideEffectReport
    ) -> None:
        if instance.content_hash:
            await self.complete_tasks(session, instance.id, SideEffectType.PIN)
            await session.commit()
            return

        try:
            await self.pin_instance(session, instance)
            report.pinned = True
        except ContentStoreError as e:
            logger.warning(f"Pin failed for certificate {instance.certificate_number}: {e}")
            self._record_failure(task, e, terminal=False)
            report.errors.append(str(e))

        await session.commit()

    async def _run_mint(
        self, session: AsyncSession, instance: CertificateInstance, task: SideEffectTask, report: SideEffectReport
    ) -> None:
        if await crud.get_ledger_record(session, instance.id) is not None:
            await self.complete_tasks(session, instance.id, SideEffectType.MINT)
            await session.commit()
            return

        if not instance.content_hash:
            await self._defer(session, task, f"Mint of {instance.certificate_number} waits for content pin")
            return

        if not self.ledger.is_configured:
            await self._defer(session, task, f"Ledger not configured, mint of {instance.certificate_number} left pending")
            return

        grant = await crud.get_grant_by_instance(session, instance.id)
        wallet = await crud.get_wallet_address(session, grant.user_id) if grant else None
        if wallet is None:
            await self._defer(session, task, f"No wallet bound for {instance.certificate_number}, mint left pending")
            return

        try:
            receipt = await self.mint_or_recover(instance, instance.content_hash, wallet)
        except LedgerError as e:
            logger.warning(f"Mint failed for certificate {instance.certificate_number}: {e}")
            self._record_failure(task, e, terminal=e.terminal)
            report.errors.append(str(e))
            await session.commit()
            return

        custody = CustodyModel.HOLDER if receipt.owner_address.lower() == wallet.lower() else CustodyModel.SYSTEM
        await self.record_mint(session, instance, receipt, custody)
        report.minted = True

    async def process_instance(self, session: AsyncSession, instance_id: int) -> SideEffectReport:
        """Run the pending tasks of one certificate instance (pin first, then mint)."""
        report = SideEffectReport(instance_id=instance_id)

        result = await session.execute(
            select(SideEffectTask).where(
                SideEffectTask.instance_id == instance_id,
                SideEffectTask.status == SideEffectStatus.PENDING.value,
            )
        )
        tasks = {task.task_type: task for task in result.scalars().all()}
        if not tasks:
            return report

        instance = await session.get(CertificateInstance, instance_id, populate_existing=True)
        if instance is None:
            return report

        pin_task = tasks.get(SideEffectType.PIN.value)
        if pin_task is not None:
            await self._run_pin(session, instance, pin_task, report)

        mint_task = tasks.get(SideEffectType.MINT.value)
        if mint_task is not None:
            try:
                await self._run_mint(session, instance, mint_task, report)
            except IntegrityError:
                # Another worker recorded the mint first
                await session.rollback()
                logger.warning(f"Ledger record for {instance_id} already written by a concurrent mint")

        return report

    async def drain(
        self,
        session: AsyncSession,
        limit: int = 100,
        exclude: Optional[Set[int]] = None,
    ) -> DrainReport:
        """
        Process instances that still have pending tasks

        Only tasks that can make progress are selected: mint tasks are skipped
        while the ledger is not configured. Instances with the fewest failed
        attempts go first, then the least recently touched, so tasks that keep
        failing or waiting rotate behind the rest instead of filling every batch.
        """
        stmt = select(SideEffectTask.instance_id).where(SideEffectTask.status == SideEffectStatus.PENDING.value)
        if not self.ledger.is_configured:
            stmt = stmt.where(SideEffectTask.task_type != SideEffectType.MINT.value)
        if exclude:
            stmt = stmt.where(SideEffectTask.instance_id.not_in(list(exclude)))

        stmt = (
            stmt.group_by(SideEffectTask.instance_id)
            .order_by(
                func.max(SideEffectTask.attempts),
                func.min(SideEffectTask.updated_at),
                SideEffectTask.instance_id,
            )
            .limit(limit)
        )
        result = await session.execute(stmt)
        instance_ids = list(result.scalars().all())

        drain_report = DrainReport()
        for instance_id in instance_ids:
            drain_report.instances += 1
            try:
                report = await self.process_instance(session, instance_id)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Outbox processing failed for instance {instance_id}: {e}")
                drain_report.errors += 1
                continue

            drain_report.pinned += int(report.pinned)
            drain_report.minted += int(report.minted)
            drain_report.errors += len(report.errors)

        if instance_ids:
            logger.info(f"Outbox drained: {drain_report.to_dict()}")
        return drain_report


class SideEffectDispatcher:
    """
    Runs outbox work for freshly issued certificates in the background

    Each dispatch opens its own session; errors are logged, never raised to
    the issuing request.
    """

    def __init__(self, session_maker: Callable[[], async_sessionmaker], processor: OutboxProcessor):
        self._session_maker = session_maker
        self.processor = processor
        self._tasks: Set[asyncio.Task] = set()
        self.in_flight: Set[int] = set()

    def dispatch(self, instance_id: int) -> None:
        self.in_flight.add(instance_id)
        task = asyncio.create_task(self._run(instance_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, instance_id: int) -> None:
        try:
            async with self._session_maker()() as session:
                report = await self.processor.process_instance(session, instance_id)
            if report.errors:
                logger.info(f"Side effects for instance {instance_id} left pending: {report.errors}")
        except Exception as e:
            logger.exception(f"Background side effects failed for instance {instance_id}: {e}")
        finally:
            self.in_flight.discard(instance_id)

    async def wait_idle(self) -> None:
        """Wait for in-flight side effects (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
