# coding: utf-8
"""
Certificate rule management
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.models import (
    Activity,
    CertificateRule,
    ChainSyncState,
    RuleMode,
    UserCertificate,
)
from src.services.certificates.errors import (
    ActivityNotFoundError,
    InvalidRuleError,
    RuleNotFoundError,
)


@dataclass(frozen=True)
class RuleSnapshot:
    """Plain copy of a rule; survives session rollbacks"""
    id: int
    name: str
    description: Optional[str]
    artifact_ref: Optional[str]
    mode: str
    need_points: int
    threshold_points: Optional[int]
    activity_id: Optional[int]

    @classmethod
    def from_model(cls, rule: CertificateRule) -> "RuleSnapshot":
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            artifact_ref=rule.artifact_ref,
            mode=rule.mode,
            need_points=rule.need_points,
            threshold_points=rule.threshold_points,
            activity_id=rule.activity_id,
        )


class RuleService:
    """Create, delete and list certificate rules"""

    @staticmethod
    async def create_rule(
        session: AsyncSession,
        name: str,
        mode: RuleMode,
        description: Optional[str] = None,
        artifact_ref: Optional[str] = None,
        need_points: int = 0,
        threshold_points: Optional[int] = None,
        activity_id: Optional[int] = None,
        auto_issue_enabled: bool = True,
    ) -> CertificateRule:
        """
        Create a rule, normalizing fields the mode does not use

        - exchange: need_points >= 0, no threshold / activity
        - auto_points: threshold_points >= 0 required, need_points forced to 0
        - auto_activity: existing activity required, need_points forced to 0

        Raises:
            InvalidRuleError: Missing or negative mode parameter
            ActivityNotFoundError: auto_activity rule for an unknown activity
        """
        mode = RuleMode(mode)

        if mode == RuleMode.EXCHANGE:
            if need_points < 0:
                raise InvalidRuleError("need_points must not be negative")
            threshold_points = None
            activity_id = None
            auto_issue_enabled = False
        else:
            need_points = 0

        if mode == RuleMode.AUTO_POINTS:
            if threshold_points is None or threshold_points < 0:
                raise InvalidRuleError("auto_points rule requires a non-negative threshold_points")
            activity_id = None

        if mode == RuleMode.AUTO_ACTIVITY:
            if activity_id is None:
                raise InvalidRuleError("auto_activity rule requires activity_id")
            if await session.get(Activity, activity_id) is None:
                raise ActivityNotFoundError(activity_id)
            threshold_points = None

        rule = CertificateRule(
            name=name,
            description=description,
            artifact_ref=artifact_ref,
            mode=mode.value,
            need_points=need_points,
            threshold_points=threshold_points,
            activity_id=activity_id,
            auto_issue_enabled=auto_issue_enabled,
        )
        session.add(rule)
        await session.commit()

        logger.info(f"Certificate rule created: {rule.id} '{name}' ({mode.value})")
        return rule

    @staticmethod
    async def delete_rule(session: AsyncSession, rule_id: int) -> None:
        """Delete a rule; grants already issued keep their certificates."""
        rule = await session.get(CertificateRule, rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)

        orphaned = await session.execute(
            update(UserCertificate)
            .where(UserCertificate.rule_id == rule_id)
            .values(rule_id=None)
            .execution_options(synchronize_session=False)
        )
        await session.delete(rule)
        await session.commit()

        logger.info(f"Certificate rule {rule_id} deleted ({orphaned.rowcount} grants orphaned)")

    @staticmethod
    async def list_rules(session: AsyncSession) -> List[CertificateRule]:
        result = await session.execute(select(CertificateRule).order_by(CertificateRule.id))
        return list(result.scalars().all())

    @staticmethod
    async def list_rules_for_user(session: AsyncSession, user_id: int) -> List[Dict[str, Any]]:
        """Rules with the user's receive status and chain sync status."""
        result = await session.execute(
            select(CertificateRule, UserCertificate)
            .outerjoin(
                UserCertificate,
                (UserCertificate.rule_id == CertificateRule.id) & (UserCertificate.user_id == user_id),
            )
            .order_by(CertificateRule.id)
        )

        rules = []
        for rule, grant in result.all():
            rules.append({
                "rule": rule,
                "is_received": grant is not None,
                "chain_status": grant.chain_status if grant else ChainSyncState.NONE.value,
                "instance_id": grant.instance_id if grant else None,
            })
        return rules
