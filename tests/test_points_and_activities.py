"""
Unit tests for points and activity services (certificate trigger sources)
"""

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy import func, select

from conftest import add_user
from src.database import crud
from src.database.models import (
    ActivityStatus,
    ParticipationStatus,
    PointsEvent,
    PointsEventType,
    User,
)
from src.services.activity_service import ActivityService
from src.services.certificates.errors import (
    ActivityNotFoundError,
    AlreadyCheckedInError,
    CertificateServiceError,
    InsufficientPointsError,
    UserNotFoundError,
)
from src.services.points_service import PointsService


@pytest.mark.asyncio
async def test_award_and_history(db_session):
    user = await add_user(db_session, "earner", points=10)

    event = await PointsService.award_points(db_session, user.id, 15, "Helped at booth")

    assert event.balance_after == 25
    assert event.event_type == PointsEventType.ADMIN_GRANT.value

    history = await PointsService.get_history(db_session, user.id)
    assert [(e.points, e.balance_after) for e in history] == [(15, 25)]


@pytest.mark.asyncio
async def test_debit_never_goes_negative(db_session):
    user = await add_user(db_session, "spender", points=10)
    user_id = user.id

    with pytest.raises(InsufficientPointsError):
        await PointsService.debit_points(db_session, user_id, 11, PointsEventType.CERTIFICATE_EXCHANGE.value, "Too much")
    await db_session.rollback()

    user = await db_session.get(User, user_id, populate_existing=True)
    assert user.points == 10

    with pytest.raises(UserNotFoundError):
        await PointsService.credit_points(db_session, 404, 5, PointsEventType.ADMIN_GRANT.value, "Nobody")


@pytest.mark.asyncio
async def test_checkin_once_per_day(db_session):
    user = await add_user(db_session, "daily")

    event = await PointsService.process_checkin(db_session, user.id)
    assert event.points == 5
    assert event.event_type == PointsEventType.CHECKIN.value

    with pytest.raises(AlreadyCheckedInError):
        await PointsService.process_checkin(db_session, user.id)


@pytest.mark.asyncio
async def test_concurrent_checkin_credited_once(db_session):
    """A check-in that slips past the pre-check is stopped by UNIQUE(user_id, checkin_day)"""
    user = await add_user(db_session, "eager", points=0)
    user_id = user.id

    await PointsService.process_checkin(db_session, user_id)

    with patch.object(PointsService, "has_checked_in", AsyncMock(return_value=False)):
        with pytest.raises(AlreadyCheckedInError):
            await PointsService.process_checkin(db_session, user_id)

    user = await db_session.get(User, user_id, populate_existing=True)
    assert user.points == 5
    assert await db_session.scalar(select(func.count()).select_from(PointsEvent)) == 1


@pytest.mark.asyncio
async def test_end_activity_awards_participants(db_session):
    first = await add_user(db_session, "first", points=0)
    second = await add_user(db_session, "second", points=5)
    activity = await crud.create_activity(db_session, "Hackathon", points_reward=20)
    activity_id, first_id, second_id = activity.id, first.id, second.id

    await ActivityService.join_activity(db_session, activity_id, first_id)
    await ActivityService.join_activity(db_session, activity_id, second_id)

    with pytest.raises(CertificateServiceError, match="Already joined"):
        await ActivityService.join_activity(db_session, activity_id, first_id)

    awarded = await ActivityService.end_activity(db_session, activity_id)
    assert sorted(awarded) == sorted([first_id, second_id])

    for user_id, expected in ((first_id, 20), (second_id, 25)):
        user = await db_session.get(User, user_id, populate_existing=True)
        assert user.points == expected

    participants = await crud.list_participants(db_session, activity_id)
    assert {p.status for p in participants} == {ParticipationStatus.AWARDED.value}

    await db_session.refresh(activity)
    assert activity.status == ActivityStatus.ENDED.value
    assert activity.ended_at is not None

    with pytest.raises(CertificateServiceError, match="already ended"):
        await ActivityService.end_activity(db_session, activity_id)
    with pytest.raises(CertificateServiceError, match="already ended"):
        await ActivityService.join_activity(db_session, activity_id, first_id)


@pytest.mark.asyncio
async def test_unknown_activity(db_session):
    user = await add_user(db_session)

    with pytest.raises(ActivityNotFoundError):
        await ActivityService.join_activity(db_session, 123, user.id)
    with pytest.raises(ActivityNotFoundError):
        await ActivityService.end_activity(db_session, 123)
