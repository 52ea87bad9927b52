# coding: utf-8
"""
Points Service

Balance changes for club members. Every change writes a PointsEvent row
next to the balance update so the history always explains the balance.

Features:
- Conditional debit (never goes below zero, safe under concurrency)
- Credits without commit, so callers can batch them in one transaction
- Daily check-in reward
- Event history
"""

from datetime import date, datetime, UTC
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from config.config import CHECKIN_POINTS
from src.database.models import User, PointsEvent, PointsEventType
from src.services.certificates.errors import (
    AlreadyCheckedInError,
    InsufficientPointsError,
    UserNotFoundError,
)


class PointsService:
    """Service for managing member points"""

    @staticmethod
    async def _apply_delta(
        session: AsyncSession,
        user_id: int,
        delta: int,
        event_type: str,
        title: str,
        checkin_day: Optional[date] = None,
    ) -> PointsEvent:
        """Apply a balance change and record it. Does not commit."""
        stmt = update(User).where(User.id == user_id)
        if delta < 0:
            # Conditional debit: the row only matches while the balance covers it
            stmt = stmt.where(User.points >= -delta)
        stmt = stmt.values(points=User.points + delta).execution_options(synchronize_session=False)

        result = await session.execute(stmt)

        if result.rowcount == 0:
            user = await session.get(User, user_id, populate_existing=True)
            if user is None:
                raise UserNotFoundError(user_id)
            raise InsufficientPointsError(required=-delta, available=user.points)

        user = await session.get(User, user_id, populate_existing=True)

        event = PointsEvent(
            user_id=user_id,
            event_type=event_type,
            title=title,
            points=delta,
            balance_after=user.points,
            checkin_day=checkin_day,
        )
        session.add(event)
        await session.flush()

        return event

    @staticmethod
    async def credit_points(
        session: AsyncSession,
        user_id: int,
        amount: int,
        event_type: str,
        title: str,
    ) -> PointsEvent:
        """Add points inside the caller's transaction"""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        return await PointsService._apply_delta(session, user_id, amount, event_type, title)

    @staticmethod
    async def debit_points(
        session: AsyncSession,
        user_id: int,
        amount: int,
        event_type: str,
        title: str,
    ) -> PointsEvent:
        """
        Deduct points inside the caller's transaction

        Raises:
            InsufficientPointsError: Balance lower than amount (nothing changed)
            UserNotFoundError: Unknown user
        """
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        return await PointsService._apply_delta(session, user_id, -amount, event_type, title)

    @staticmethod
    async def award_points(
        session: AsyncSession,
        user_id: int,
        amount: int,
        title: str,
        event_type: str = PointsEventType.ADMIN_GRANT.value,
    ) -> PointsEvent:
        """Credit points and commit"""
        event = await PointsService.credit_points(session, user_id, amount, event_type, title)
        await session.commit()

        logger.info(f"Awarded {amount} points to user {user_id} ({event_type}, balance: {event.balance_after})")
        return event

    @staticmethod
    async def has_checked_in(session: AsyncSession, user_id: int, day: date) -> bool:
        result = await session.execute(
            select(PointsEvent.id).where(PointsEvent.user_id == user_id, PointsEvent.checkin_day == day)
        )
        return result.first() is not None

    @staticmethod
    async def process_checkin(session: AsyncSession, user_id: int) -> PointsEvent:
        """
        Daily check-in reward

        UNIQUE(user_id, checkin_day) on points_events settles concurrent
        check-ins: only one of them commits.

        Raises:
            AlreadyCheckedInError: User already checked in today (UTC)
        """
        today = datetime.now(UTC).date()
        if await PointsService.has_checked_in(session, user_id, today):
            raise AlreadyCheckedInError("Already checked in today")

        try:
            event = await PointsService._apply_delta(
                session,
                user_id,
                CHECKIN_POINTS,
                PointsEventType.CHECKIN.value,
                "Daily check-in",
                checkin_day=today,
            )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise AlreadyCheckedInError("Already checked in today")

        logger.info(f"User {user_id} checked in: +{CHECKIN_POINTS} points (balance: {event.balance_after})")
        return event

    @staticmethod
    async def get_history(session: AsyncSession, user_id: int, limit: int = 50) -> List[PointsEvent]:
        result = await session.execute(
            select(PointsEvent)
            .where(PointsEvent.user_id == user_id)
            .order_by(PointsEvent.created_at.desc(), PointsEvent.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
