# coding: utf-8
"""
Points API Endpoints

Points changes are certificate triggers: every successful change is followed
by an automatic issuance check for points-based rules.
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any, List
from pydantic import BaseModel, Field

from src.api.api_key_auth import verify_admin_key
from src.api.rate_limit import limiter, trigger_rate_limit
from src.api.certificates import auto_issue_after
from src.database.engine import get_session
from src.services.certificates.container import CertificateServices, get_certificate_services
from src.services.certificates.eligibility import Trigger
from src.services.points_service import PointsService

router = APIRouter(prefix="/points", tags=["points"])


class AwardPointsRequest(BaseModel):
    user_id: int
    amount: int = Field(gt=0)
    title: str = Field("Manual award", max_length=200)


@router.post("/award", dependencies=[Depends(verify_admin_key)])
async def award_points(
    request: AwardPointsRequest,
    session: AsyncSession = Depends(get_session),
    services: CertificateServices = Depends(get_certificate_services),
) -> Dict[str, Any]:
    event = await PointsService.award_points(session, request.user_id, request.amount, request.title)
    balance = event.balance_after
    auto_issue = await auto_issue_after(services, session, request.user_id, [Trigger.points_changed()])

    return {
        "success": True,
        "balance": balance,
        "auto_issue": auto_issue,
    }


@router.post("/checkin/{user_id}")
@limiter.limit(trigger_rate_limit)
async def checkin(
    user_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    services: CertificateServices = Depends(get_certificate_services),
) -> Dict[str, Any]:
    """Daily check-in"""
    event = await PointsService.process_checkin(session, user_id)
    points, balance = event.points, event.balance_after
    auto_issue = await auto_issue_after(services, session, user_id, [Trigger.points_changed()])

    return {
        "success": True,
        "points": points,
        "balance": balance,
        "auto_issue": auto_issue,
    }


@router.get("/history/{user_id}")
async def points_history(
    user_id: int,
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
) -> List[Dict[str, Any]]:
    events = await PointsService.get_history(session, user_id, limit)
    return [
        {
            "id": event.id,
            "event_type": event.event_type,
            "title": event.title,
            "points": event.points,
            "balance_after": event.balance_after,
            "created_at": event.created_at.isoformat(),
        }
        for event in events
    ]
