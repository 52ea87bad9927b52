# coding: utf-8
"""
Activities API Endpoints

Ending an activity awards its participants and runs the automatic
certificate checks (points first, then the activity itself).
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.api_key_auth import verify_admin_key
from src.api.certificates import auto_issue_after
from src.database import crud
from src.database.engine import get_session
from src.services.activity_service import ActivityService
from src.services.certificates.container import CertificateServices, get_certificate_services
from src.services.certificates.eligibility import Trigger

router = APIRouter(prefix="/activities", tags=["activities"])


class CreateActivityRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    points_reward: int = Field(0, ge=0)


class JoinActivityRequest(BaseModel):
    user_id: int


@router.post("", dependencies=[Depends(verify_admin_key)])
async def create_activity(
    request: CreateActivityRequest,
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    activity = await crud.create_activity(
        session, request.title, request.points_reward, request.description
    )
    return {"id": activity.id, "title": activity.title, "status": activity.status}


@router.post("/{activity_id}/join")
async def join_activity(
    activity_id: int,
    request: JoinActivityRequest,
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    participation = await ActivityService.join_activity(session, activity_id, request.user_id)
    return {"success": True, "status": participation.status}


@router.post("/{activity_id}/end", dependencies=[Depends(verify_admin_key)])
async def end_activity(
    activity_id: int,
    session: AsyncSession = Depends(get_session),
    services: CertificateServices = Depends(get_certificate_services),
) -> Dict[str, Any]:
    awarded = await ActivityService.end_activity(session, activity_id)

    issued = 0
    for user_id in awarded:
        report = await auto_issue_after(
            services,
            session,
            user_id,
            [Trigger.points_changed(), Trigger.activity_completed(activity_id)],
        )
        if report:
            issued += report["issued"]

    return {"success": True, "awarded": len(awarded), "certificates_issued": issued}
