# coding: utf-8
"""
Reconciliation sweep

Catches anything the event-driven path missed (lost trigger, restart between
a points update and its check) and drains the side-effect outbox. Safe to
run repeatedly and alongside live issuance.
"""
from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from src.services.certificates.eligibility import EligibilityEvaluator
from src.services.certificates.errors import AlreadyGrantedError, UserNotFoundError
from src.services.certificates.issuance import IssuanceCoordinator
from src.services.certificates.outbox import DrainReport, OutboxProcessor, SideEffectDispatcher
from src.services.certificates.rules import RuleSnapshot


@dataclass
class SweepReport:
    checked: int = 0
    issued: int = 0
    failed: int = 0
    side_effects: DrainReport = field(default_factory=DrainReport)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "issued": self.issued,
            "failed": self.failed,
            "side_effects": self.side_effects.to_dict(),
        }


class ReconciliationSweep:
    """Batch pass over every enabled automatic rule"""

    def __init__(
        self,
        evaluator: EligibilityEvaluator,
        issuer: IssuanceCoordinator,
        outbox: OutboxProcessor,
        drain_limit: int = 100,
        dispatcher: SideEffectDispatcher | None = None,
    ):
        self.evaluator = evaluator
        self.issuer = issuer
        self.outbox = outbox
        self.drain_limit = drain_limit
        self.dispatcher = dispatcher

    async def sweep_all(self, session: AsyncSession) -> SweepReport:
        """
        Issue every missing automatic grant, then drain pending side effects

        Returns:
            SweepReport; checked counts eligible users without a grant
        """
        report = SweepReport()
        rules = [RuleSnapshot.from_model(rule) for rule in await self.evaluator.enabled_auto_rules(session)]

        for rule in rules:
            user_ids = await self.evaluator.eligible_user_ids(session, rule)
            report.checked += len(user_ids)

            for user_id in user_ids:
                try:
                    # Side effects are handled by the drain below
                    await self.issuer.issue(session, user_id, rule, dispatch=False)
                    report.issued += 1
                except AlreadyGrantedError:
                    logger.debug(f"Rule {rule.id} already granted to user {user_id}")
                except UserNotFoundError:
                    logger.warning(f"User {user_id} disappeared during sweep of rule {rule.id}")
                    report.failed += 1

        in_flight = set(self.dispatcher.in_flight) if self.dispatcher else None
        report.side_effects = await self.outbox.drain(session, limit=self.drain_limit, exclude=in_flight)

        logger.info(f"Certificate sweep finished: {report.to_dict()}")
        return report
