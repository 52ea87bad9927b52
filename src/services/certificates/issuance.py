# coding: utf-8
"""
Certificate issuance

Grant transaction (optional points debit + certificate instance + grant +
outbox rows) commits atomically; pinning and minting happen afterwards and
never undo a grant. UNIQUE(user_id, rule_id) on user_certificates is the
authority on double issuance: a violation is reported as AlreadyGrantedError.
"""
from dataclasses import dataclass
from typing import Optional, Union

from loguru import logger
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import crud
from src.database.models import (
    CertificateInstance,
    CertificateRule,
    ChainSyncState,
    LedgerRecord,
    PointsEventType,
    RuleMode,
    SideEffectTask,
    User,
    UserCertificate,
)
from src.services.certificates.config import IssuanceConfig
from src.services.certificates.documents import generate_certificate_number
from src.services.certificates.eligibility import EligibilityEvaluator, Trigger
from src.services.certificates.errors import (
    AlreadyGrantedError,
    CertificateNotFoundError,
    ChainSyncRequestError,
    ConditionNotMetError,
    RuleNotFoundError,
    UserNotFoundError,
)
from src.services.certificates.outbox import OutboxProcessor, SideEffectDispatcher
from src.services.certificates.rules import RuleSnapshot
from src.services.points_service import PointsService


@dataclass
class IssueResult:
    grant_id: int
    instance_id: int
    certificate_number: str
    user_id: int
    rule_id: int

    def to_dict(self) -> dict:
        return {
            "grant_id": self.grant_id,
            "instance_id": self.instance_id,
            "certificate_number": self.certificate_number,
            "user_id": self.user_id,
            "rule_id": self.rule_id,
        }


@dataclass
class CheckReport:
    checked: int = 0
    issued: int = 0

    def to_dict(self) -> dict:
        return {"checked": self.checked, "issued": self.issued}


class IssuanceCoordinator:
    """
    Grants certificates

    Features:
    - Atomic grant with optional exchange debit
    - Durable pin / mint tasks written with the grant
    - Background side effects after commit
    - Manual redemption with re-validation of automatic conditions
    - Per-user automatic check
    - Revocation and chain-sync requests
    """

    def __init__(
        self,
        evaluator: EligibilityEvaluator,
        outbox: OutboxProcessor,
        config: IssuanceConfig,
        dispatcher: Optional[SideEffectDispatcher] = None,
    ):
        self.evaluator = evaluator
        self.outbox = outbox
        self.config = config
        self.dispatcher = dispatcher

    async def issue(
        self,
        session: AsyncSession,
        user_id: int,
        rule: Union[CertificateRule, RuleSnapshot],
        debit_points: int = 0,
        dispatch: bool = True,
    ) -> IssueResult:
        """
        Grant a rule's certificate to a user

        Args:
            session: Database session (committed or rolled back here)
            user_id: Recipient
            rule: Rule being granted
            debit_points: Points to deduct in the same transaction (exchange)
            dispatch: Start pin / mint in the background after commit

        Raises:
            AlreadyGrantedError: Grant for (user, rule) exists
            UserNotFoundError: Unknown user
            InsufficientPointsError: Balance lower than debit_points
        """
        rule = rule if isinstance(rule, RuleSnapshot) else RuleSnapshot.from_model(rule)

        user = await session.get(User, user_id, populate_existing=True)
        if user is None:
            raise UserNotFoundError(user_id)

        if await crud.get_grant(session, user_id, rule.id) is not None:
            raise AlreadyGrantedError(user_id, rule.id)

        holder_name, holder_student_id = user.username, user.student_id

        try:
            if debit_points > 0:
                await PointsService.debit_points(
                    session,
                    user_id,
                    debit_points,
                    PointsEventType.CERTIFICATE_EXCHANGE.value,
                    f"Certificate exchange: {rule.name}",
                )

            instance = CertificateInstance(
                certificate_number=generate_certificate_number(self.config.number_prefix),
                holder_name=holder_name,
                holder_student_id=holder_student_id,
                certificate_type=rule.name,
                organization=self.config.organization,
                description=rule.description,
                artifact_ref=rule.artifact_ref,
            )
            session.add(instance)
            await session.flush()

            grant = UserCertificate(user_id=user_id, rule_id=rule.id, instance_id=instance.id)
            session.add(grant)
            try:
                await session.flush()
            except IntegrityError as e:
                logger.warning(f"Concurrent grant blocked: user {user_id}, rule {rule.id}")
                raise AlreadyGrantedError(user_id, rule.id) from e

            has_wallet = await crud.get_wallet_address(session, user_id) is not None
            await self.outbox.enqueue(session, instance.id, with_mint=has_wallet)

            result = IssueResult(
                grant_id=grant.id,
                instance_id=instance.id,
                certificate_number=instance.certificate_number,
                user_id=user_id,
                rule_id=rule.id,
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info(
            f"Certificate {result.certificate_number} issued: user {user_id}, rule {rule.id} '{rule.name}'"
        )

        if dispatch and self.dispatcher is not None:
            self.dispatcher.dispatch(result.instance_id)

        return result

    async def redeem(self, session: AsyncSession, user_id: int, rule_id: int) -> IssueResult:
        """
        Manual redemption

        Exchange rules debit need_points. Automatic rules are a fallback for a
        missed trigger, so their condition is checked again here.

        Raises:
            RuleNotFoundError, UserNotFoundError, AlreadyGrantedError,
            InsufficientPointsError, ConditionNotMetError
        """
        rule = await session.get(CertificateRule, rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        snapshot = RuleSnapshot.from_model(rule)

        user = await session.get(User, user_id, populate_existing=True)
        if user is None:
            raise UserNotFoundError(user_id)

        if snapshot.mode == RuleMode.EXCHANGE.value:
            return await self.issue(session, user_id, snapshot, debit_points=snapshot.need_points)

        if not await self.evaluator.is_satisfied(session, user, rule):
            if snapshot.mode == RuleMode.AUTO_POINTS.value:
                raise ConditionNotMetError(
                    f"Points threshold not reached: {snapshot.threshold_points} required",
                    {"required": snapshot.threshold_points, "available": user.points},
                )
            raise ConditionNotMetError(
                "Activity participation is not completed",
                {"activity_id": snapshot.activity_id},
            )

        return await self.issue(session, user_id, snapshot)

    async def check_user(self, session: AsyncSession, user_id: int, trigger: Trigger) -> CheckReport:
        """Evaluate a trigger for one user and issue everything newly satisfied."""
        rules = [RuleSnapshot.from_model(rule) for rule in await self.evaluator.evaluate(session, user_id, trigger)]
        report = CheckReport(checked=len(rules))

        for rule in rules:
            try:
                await self.issue(session, user_id, rule)
                report.issued += 1
            except AlreadyGrantedError:
                logger.debug(f"Rule {rule.id} granted to user {user_id} concurrently")

        if report.issued:
            logger.info(f"Auto-issue for user {user_id} ({trigger.type.value}): {report.to_dict()}")
        return report

    async def request_chain_sync(self, session: AsyncSession, user_id: int, rule_id: int) -> None:
        """Move a grant's chain status from none to pending."""
        result = await session.execute(
            update(UserCertificate)
            .where(
                UserCertificate.user_id == user_id,
                UserCertificate.rule_id == rule_id,
                UserCertificate.chain_status == ChainSyncState.NONE.value,
            )
            .values(chain_status=ChainSyncState.PENDING.value)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            await session.rollback()
            raise ChainSyncRequestError("Certificate not received or chain sync already requested")

        await session.commit()
        logger.info(f"Chain sync requested: user {user_id}, rule {rule_id}")

    async def revoke(self, session: AsyncSession, grant_id: int) -> None:
        """
        Delete a grant with its certificate, ledger record and outbox tasks

        A minted token stays on chain; only the local records go.
        """
        grant = await session.get(UserCertificate, grant_id)
        if grant is None:
            raise CertificateNotFoundError(f"Issued certificate {grant_id} not found")
        instance_id = grant.instance_id

        ledger = await crud.get_ledger_record(session, instance_id)
        if ledger is not None:
            logger.warning(
                f"Revoking on-chain certificate {ledger.certificate_number} "
                f"(token {ledger.token_id}); the token is not burned"
            )

        try:
            await session.execute(delete(LedgerRecord).where(LedgerRecord.instance_id == instance_id))
            await session.execute(delete(SideEffectTask).where(SideEffectTask.instance_id == instance_id))
            await session.execute(delete(UserCertificate).where(UserCertificate.id == grant_id))
            await session.execute(delete(CertificateInstance).where(CertificateInstance.id == instance_id))
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info(f"Grant {grant_id} revoked (instance {instance_id})")
