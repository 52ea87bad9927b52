# coding: utf-8
"""
Eligibility evaluation for automatic certificate rules

Read-only: nothing here writes to the database.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Set, Union

from sqlalchemy import select, exists
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.models import (
    ActivityParticipation,
    CertificateRule,
    ParticipationStatus,
    RuleMode,
    User,
    UserCertificate,
)
from src.services.certificates.errors import UserNotFoundError
from src.services.certificates.rules import RuleSnapshot


FINALIZED_PARTICIPATION = (ParticipationStatus.AWARDED.value, ParticipationStatus.COMPLETED.value)


class TriggerType(str, Enum):
    POINTS = "points"
    ACTIVITY = "activity"


@dataclass(frozen=True)
class Trigger:
    """Event that may make a user eligible for automatic rules"""
    type: TriggerType
    activity_id: Optional[int] = None

    @classmethod
    def points_changed(cls) -> "Trigger":
        return cls(TriggerType.POINTS)

    @classmethod
    def activity_completed(cls, activity_id: int) -> "Trigger":
        return cls(TriggerType.ACTIVITY, activity_id)


def _no_grant_for(rule_id: int, user_id_column):
    return ~exists().where(
        UserCertificate.user_id == user_id_column,
        UserCertificate.rule_id == rule_id,
    )


class EligibilityEvaluator:
    """
    Decides which automatic rules a user newly satisfies

    Features:
    - Trigger filtering (points change vs. activity completion)
    - Condition checks (threshold / finalized participation)
    - Skips rules already granted to the user
    - Bulk variant for the reconciliation sweep
    """

    async def enabled_auto_rules(
        self, session: AsyncSession, trigger: Optional[Trigger] = None
    ) -> List[CertificateRule]:
        """Auto-issue rules, optionally narrowed to those a trigger can fire."""
        stmt = select(CertificateRule).where(CertificateRule.auto_issue_enabled.is_(True))

        if trigger is None:
            stmt = stmt.where(CertificateRule.mode != RuleMode.EXCHANGE.value)
        elif trigger.type == TriggerType.POINTS:
            stmt = stmt.where(CertificateRule.mode == RuleMode.AUTO_POINTS.value)
        else:
            stmt = stmt.where(
                CertificateRule.mode == RuleMode.AUTO_ACTIVITY.value,
                CertificateRule.activity_id == trigger.activity_id,
            )

        result = await session.execute(stmt.order_by(CertificateRule.id))
        return list(result.scalars().all())

    async def is_satisfied(
        self, session: AsyncSession, user: User, rule: Union[CertificateRule, RuleSnapshot]
    ) -> bool:
        """Whether the user meets the rule's automatic condition."""
        if rule.mode == RuleMode.AUTO_POINTS.value:
            return rule.threshold_points is not None and user.points >= rule.threshold_points

        if rule.mode == RuleMode.AUTO_ACTIVITY.value:
            if rule.activity_id is None:
                return False
            result = await session.execute(
                select(ActivityParticipation.id).where(
                    ActivityParticipation.activity_id == rule.activity_id,
                    ActivityParticipation.user_id == user.id,
                    ActivityParticipation.status.in_(FINALIZED_PARTICIPATION),
                )
            )
            return result.first() is not None

        return False

    async def granted_rule_ids(
        self, session: AsyncSession, user_id: int, rule_ids: Iterable[int]
    ) -> Set[int]:
        rule_ids = list(rule_ids)
        if not rule_ids:
            return set()
        result = await session.execute(
            select(UserCertificate.rule_id).where(
                UserCertificate.user_id == user_id,
                UserCertificate.rule_id.in_(rule_ids),
            )
        )
        return set(result.scalars().all())

    async def evaluate(self, session: AsyncSession, user_id: int, trigger: Trigger) -> List[CertificateRule]:
        """
        Rules the user satisfies for this trigger and does not hold yet

        Raises:
            UserNotFoundError: Unknown user
        """
        user = await session.get(User, user_id, populate_existing=True)
        if user is None:
            raise UserNotFoundError(user_id)

        candidates = await self.enabled_auto_rules(session, trigger)
        if not candidates:
            return []

        granted = await self.granted_rule_ids(session, user_id, [rule.id for rule in candidates])

        eligible = []
        for rule in candidates:
            if rule.id in granted:
                continue
            if await self.is_satisfied(session, user, rule):
                eligible.append(rule)

        return eligible

    async def eligible_user_ids(
        self, session: AsyncSession, rule: Union[CertificateRule, RuleSnapshot]
    ) -> List[int]:
        """All users satisfying the rule who lack a grant for it (single query)."""
        if rule.mode == RuleMode.AUTO_POINTS.value and rule.threshold_points is not None:
            stmt = select(User.id).where(
                User.points >= rule.threshold_points,
                _no_grant_for(rule.id, User.id),
            )
        elif rule.mode == RuleMode.AUTO_ACTIVITY.value and rule.activity_id is not None:
            stmt = select(ActivityParticipation.user_id).where(
                ActivityParticipation.activity_id == rule.activity_id,
                ActivityParticipation.status.in_(FINALIZED_PARTICIPATION),
                _no_grant_for(rule.id, ActivityParticipation.user_id),
            )
        else:
            return []

        result = await session.execute(stmt.order_by(stmt.selected_columns[0]))
        return list(result.scalars().all())
