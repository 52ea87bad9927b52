# coding: utf-8
"""
Activity Service

Joining activities and ending them. Ending an activity credits its reward
to every joined participant and marks them awarded, which is what
activity-based certificate rules look for.
"""

from datetime import datetime, UTC
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from src.database import crud
from src.database.models import (
    Activity,
    ActivityParticipation,
    ActivityStatus,
    ParticipationStatus,
    PointsEventType,
    User,
)
from src.services.certificates.errors import (
    ActivityNotFoundError,
    CertificateServiceError,
    UserNotFoundError,
)
from src.services.points_service import PointsService


class ActivityService:
    """Service for activity participation"""

    @staticmethod
    async def join_activity(session: AsyncSession, activity_id: int, user_id: int) -> ActivityParticipation:
        activity = await session.get(Activity, activity_id)
        if activity is None:
            raise ActivityNotFoundError(activity_id)
        if activity.status == ActivityStatus.ENDED.value:
            raise CertificateServiceError("Activity has already ended")
        if await session.get(User, user_id) is None:
            raise UserNotFoundError(user_id)

        participation = ActivityParticipation(activity_id=activity_id, user_id=user_id)
        session.add(participation)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise CertificateServiceError("Already joined this activity")

        logger.info(f"User {user_id} joined activity {activity_id}")
        return participation

    @staticmethod
    async def end_activity(session: AsyncSession, activity_id: int) -> List[int]:
        """
        End an activity and award its participants

        All credits and status changes commit together.

        Returns:
            IDs of users awarded in this call
        """
        activity = await session.get(Activity, activity_id)
        if activity is None:
            raise ActivityNotFoundError(activity_id)
        if activity.status == ActivityStatus.ENDED.value:
            raise CertificateServiceError("Activity has already ended")

        participants = await crud.list_participants(session, activity_id, ParticipationStatus.JOINED)
        reward = activity.points_reward
        title = f"Activity reward: {activity.title}"
        awarded = []

        try:
            for participation in participants:
                if reward > 0:
                    await PointsService.credit_points(
                        session,
                        participation.user_id,
                        reward,
                        PointsEventType.ACTIVITY_REWARD.value,
                        title,
                    )
                participation.status = ParticipationStatus.AWARDED.value
                awarded.append(participation.user_id)

            activity.status = ActivityStatus.ENDED.value
            activity.ended_at = datetime.now(UTC)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info(f"Activity {activity_id} ended: {len(awarded)} participants awarded {reward} points")
        return awarded
