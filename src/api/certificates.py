# coding: utf-8
"""
Certificates API Endpoints

Redemption, automatic issuance checks, chain sync and public verification.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loguru import logger

from src.api.api_key_auth import verify_admin_key
from src.api.rate_limit import limiter, trigger_rate_limit
from src.database import crud
from src.database.engine import get_session
from src.database.models import CertificateInstance, CertificateRule, LedgerRecord, RuleMode
from src.services.certificates.container import CertificateServices, get_certificate_services
from src.services.certificates.eligibility import Trigger, TriggerType
from src.services.certificates.errors import (
    CertificateNotFoundError,
    CertificateServiceError,
    InvalidRuleError,
)
from src.services.certificates.rules import RuleService

router = APIRouter(prefix="/certificates", tags=["certificates"])


# ===========================
# REQUEST MODELS
# ===========================


class ReceiveRequest(BaseModel):
    user_id: int
    certificate_id: int


class SyncChainRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[int] = Field(None, alias="userId")


class ApplyChainRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(alias="userId")
    certificate_id: int = Field(alias="certificateId")


class CheckUserRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(alias="userId")
    trigger_type: str = Field(alias="triggerType")
    activity_id: Optional[int] = Field(None, alias="activityId")


class CreateRuleRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    mode: RuleMode
    description: Optional[str] = None
    artifact_ref: Optional[str] = None
    need_points: int = 0
    threshold_points: Optional[int] = None
    activity_id: Optional[int] = None
    auto_issue_enabled: bool = True


# ===========================
# SERIALIZERS
# ===========================


def rule_to_dict(rule: CertificateRule) -> Dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "artifact_ref": rule.artifact_ref,
        "mode": rule.mode,
        "need_points": rule.need_points,
        "threshold_points": rule.threshold_points,
        "activity_id": rule.activity_id,
        "auto_issue_enabled": rule.auto_issue_enabled,
    }


def ledger_to_dict(record: Optional[LedgerRecord]) -> Dict[str, Any]:
    if record is None:
        return {"is_on_chain": False}
    return {
        "is_on_chain": True,
        "tx_hash": record.tx_hash,
        "token_id": record.token_id,
        "block_number": record.block_number,
        "owner_address": record.owner_address,
        "custody": record.custody,
        "minted_at": record.created_at.isoformat(),
    }


def instance_to_dict(instance: CertificateInstance) -> Dict[str, Any]:
    return {
        "id": instance.id,
        "certificate_number": instance.certificate_number,
        "holder_name": instance.holder_name,
        "holder_student_id": instance.holder_student_id,
        "certificate_type": instance.certificate_type,
        "organization": instance.organization,
        "description": instance.description,
        "artifact_ref": instance.artifact_ref,
        "content_hash": instance.content_hash,
        "content_hash_is_placeholder": instance.content_hash_is_placeholder,
        "is_valid": instance.is_valid,
        "issue_date": instance.issue_date.isoformat(),
    }


# ===========================
# ISSUANCE
# ===========================


@router.post("/receive")
@limiter.limit(trigger_rate_limit)
async def receive_certificate(
    body: ReceiveRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    services: CertificateServices = Depends(get_certificate_services),
) -> Dict[str, Any]:
    """
    Redeem a certificate (exchange, or fallback for automatic rules)

    Errors: 404 user/rule, 400 already received / insufficient points,
    403 automatic condition not met
    """
    result = await services.issuer.redeem(session, body.user_id, body.certificate_id)
    return {"success": True, "message": "Certificate received", **result.to_dict()}


@router.post("/auto-issue/check", dependencies=[Depends(verify_admin_key)])
async def run_auto_issue_sweep(
    session: AsyncSession = Depends(get_session),
    services: CertificateServices = Depends(get_certificate_services),
) -> Dict[str, Any]:
    """Reconciliation sweep over all automatic rules"""
    report = await services.sweeper.sweep_all(session)
    return {"success": True, **report.to_dict()}


@router.post("/auto-issue/check-user")
async def run_auto_issue_for_user(
    request: CheckUserRequest,
    session: AsyncSession = Depends(get_session),
    services: CertificateServices = Depends(get_certificate_services),
) -> Dict[str, Any]:
    """Automatic issuance check for one user"""
    if request.trigger_type == TriggerType.POINTS.value:
        trigger = Trigger.points_changed()
    elif request.trigger_type == TriggerType.ACTIVITY.value and request.activity_id is not None:
        trigger = Trigger.activity_completed(request.activity_id)
    else:
        logger.debug(f"Unknown auto-issue trigger: {request.trigger_type}")
        return {"success": True, "checked": 0, "issued": 0}

    report = await services.issuer.check_user(session, request.user_id, trigger)
    return {"success": True, **report.to_dict()}


@router.get("/check-received")
async def check_received(
    user_id: int = Query(...),
    certificate_id: int = Query(...),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    grant = await crud.get_grant(session, user_id, certificate_id)
    return {
        "is_received": grant is not None,
        "chain_status": grant.chain_status if grant else None,
        "instance_id": grant.instance_id if grant else None,
    }


# ===========================
# CHAIN SYNC
# ===========================


@router.post("/apply-chain")
async def apply_chain(
    request: ApplyChainRequest,
    session: AsyncSession = Depends(get_session),
    services: CertificateServices = Depends(get_certificate_services),
) -> Dict[str, Any]:
    """Ask for a received certificate to be minted (none -> pending)"""
    await services.issuer.request_chain_sync(session, request.user_id, request.certificate_id)
    return {"success": True, "chain_status": "pending"}


@router.post("/{instance_id}/sync-chain")
@limiter.limit(trigger_rate_limit)
async def sync_chain(
    instance_id: int,
    body: SyncChainRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    services: CertificateServices = Depends(get_certificate_services),
) -> Dict[str, Any]:
    """Mint a certificate to its holder's wallet"""
    result = await services.chain_sync.backfill(session, instance_id, body.user_id)
    return {
        "success": True,
        "message": "Certificate already on chain" if result.already_on_chain else "Certificate minted",
        "tx_hash": result.tx_hash,
        "token_id": result.token_id,
        "block_number": result.block_number,
        "already_on_chain": result.already_on_chain,
    }


@router.get("/verify/{certificate_number}")
async def verify_certificate(
    certificate_number: str,
    session: AsyncSession = Depends(get_session),
    services: CertificateServices = Depends(get_certificate_services),
) -> Dict[str, Any]:
    """Public verification by certificate number"""
    found = await crud.get_certificate_by_number(session, certificate_number)
    if found is None:
        raise CertificateNotFoundError(f"Certificate {certificate_number} not found")

    instance, ledger = found
    content_url = None
    if instance.content_hash and not instance.content_hash_is_placeholder:
        content_url = services.ipfs.gateway_url(instance.content_hash)

    return {
        "valid": instance.is_valid,
        "certificate": instance_to_dict(instance),
        "content_url": content_url,
        "blockchain": ledger_to_dict(ledger),
    }


# ===========================
# RULES
# ===========================


@router.get("/rules")
async def list_rules(session: AsyncSession = Depends(get_session)) -> List[Dict[str, Any]]:
    return [rule_to_dict(rule) for rule in await RuleService.list_rules(session)]


@router.post("/rules", dependencies=[Depends(verify_admin_key)])
async def create_rule(
    request: CreateRuleRequest,
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    if request.mode == RuleMode.EXCHANGE and request.need_points <= 0:
        raise InvalidRuleError("exchange rule requires positive need_points")

    rule = await RuleService.create_rule(session, **request.model_dump())
    return rule_to_dict(rule)


@router.delete("/rules/{rule_id}", dependencies=[Depends(verify_admin_key)])
async def delete_rule(rule_id: int, session: AsyncSession = Depends(get_session)) -> Dict[str, Any]:
    await RuleService.delete_rule(session, rule_id)
    return {"success": True}


@router.get("/rules/user/{user_id}")
async def list_rules_for_user(user_id: int, session: AsyncSession = Depends(get_session)) -> List[Dict[str, Any]]:
    """Rules with the user's receive and chain status"""
    rows = await RuleService.list_rules_for_user(session, user_id)
    return [
        {
            **rule_to_dict(row["rule"]),
            "is_received": row["is_received"],
            "chain_status": row["chain_status"],
            "instance_id": row["instance_id"],
        }
        for row in rows
    ]


async def auto_issue_after(
    services: CertificateServices,
    session: AsyncSession,
    user_id: int,
    triggers: List[Trigger],
) -> Optional[Dict[str, int]]:
    """
    Automatic issuance after a committed trigger (points / activity)

    The trigger itself is already committed, so a failed check is logged and
    left to the reconciliation sweep instead of failing the request.
    """
    total = {"checked": 0, "issued": 0}
    try:
        for trigger in triggers:
            report = await services.issuer.check_user(session, user_id, trigger)
            total["checked"] += report.checked
            total["issued"] += report.issued
    except (CertificateServiceError, SQLAlchemyError) as e:
        logger.error(f"Auto-issue check failed for user {user_id}: {e}")
        return None
    return total
