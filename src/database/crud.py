"""
CRUD operations for Club Certificate Service

Async database operations using SQLAlchemy 2.0
"""

import logging
import re
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.models import (
    Activity,
    ActivityParticipation,
    CertificateInstance,
    LedgerRecord,
    ParticipationStatus,
    User,
    UserCertificate,
    UserWallet,
)
from src.services.certificates.errors import (
    InvalidWalletError,
    UserNotFoundError,
    WalletInUseError,
)

logger = logging.getLogger(__name__)

WALLET_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


# ===========================
# USERS
# ===========================


async def create_user(
    session: AsyncSession,
    username: str,
    student_id: Optional[str] = None,
    points: int = 0,
) -> User:
    user = User(username=username, student_id=student_id, points=points)
    session.add(user)
    await session.commit()
    await session.refresh(user)

    logger.info(f"User created: {user.id} ({username})")
    return user


async def get_user(session: AsyncSession, user_id: int) -> Optional[User]:
    return await session.get(User, user_id, populate_existing=True)


# ===========================
# WALLETS
# ===========================


async def get_wallet_address(session: AsyncSession, user_id: int) -> Optional[str]:
    result = await session.execute(
        select(UserWallet.wallet_address).where(UserWallet.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def bind_wallet(session: AsyncSession, user_id: int, wallet_address: str) -> UserWallet:
    """
    Bind (or re-bind) a wallet to a user

    Args:
        session: Database session
        user_id: Wallet owner
        wallet_address: 0x-prefixed 40 hex chars

    Returns:
        UserWallet row

    Raises:
        InvalidWalletError: Malformed address
        WalletInUseError: Address already bound to another user
        UserNotFoundError: Unknown user
    """
    wallet_address = wallet_address.strip()
    if not WALLET_ADDRESS_RE.match(wallet_address):
        raise InvalidWalletError("Invalid wallet address format")

    if await session.get(User, user_id) is None:
        raise UserNotFoundError(user_id)

    result = await session.execute(
        select(UserWallet).where(UserWallet.wallet_address == wallet_address)
    )
    owner = result.scalar_one_or_none()
    if owner is not None and owner.user_id != user_id:
        raise WalletInUseError("Wallet address is already bound to another account")

    result = await session.execute(select(UserWallet).where(UserWallet.user_id == user_id))
    wallet = result.scalar_one_or_none()

    try:
        if wallet is None:
            wallet = UserWallet(user_id=user_id, wallet_address=wallet_address)
            session.add(wallet)
        else:
            wallet.wallet_address = wallet_address
            wallet.bound_at = datetime.now(UTC)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Concurrent bind of wallet {wallet_address} rejected for user {user_id}")
        raise WalletInUseError("Wallet address is already bound to another account")

    logger.info(f"Wallet {wallet_address} bound to user {user_id}")
    return wallet


# ===========================
# ACTIVITIES
# ===========================


async def create_activity(
    session: AsyncSession,
    title: str,
    points_reward: int = 0,
    description: Optional[str] = None,
) -> Activity:
    activity = Activity(title=title, points_reward=points_reward, description=description)
    session.add(activity)
    await session.commit()
    await session.refresh(activity)
    return activity


async def get_participation(
    session: AsyncSession, activity_id: int, user_id: int
) -> Optional[ActivityParticipation]:
    result = await session.execute(
        select(ActivityParticipation).where(
            ActivityParticipation.activity_id == activity_id,
            ActivityParticipation.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def list_participants(
    session: AsyncSession, activity_id: int, status: Optional[ParticipationStatus] = None
) -> List[ActivityParticipation]:
    stmt = select(ActivityParticipation).where(ActivityParticipation.activity_id == activity_id)
    if status is not None:
        stmt = stmt.where(ActivityParticipation.status == status.value)
    result = await session.execute(stmt.order_by(ActivityParticipation.id))
    return list(result.scalars().all())


# ===========================
# CERTIFICATES
# ===========================


async def get_grant(session: AsyncSession, user_id: int, rule_id: int) -> Optional[UserCertificate]:
    result = await session.execute(
        select(UserCertificate).where(
            UserCertificate.user_id == user_id,
            UserCertificate.rule_id == rule_id,
        )
    )
    return result.scalar_one_or_none()


async def get_grant_by_instance(session: AsyncSession, instance_id: int) -> Optional[UserCertificate]:
    result = await session.execute(
        select(UserCertificate).where(UserCertificate.instance_id == instance_id)
    )
    return result.scalar_one_or_none()


async def get_ledger_record(session: AsyncSession, instance_id: int) -> Optional[LedgerRecord]:
    result = await session.execute(
        select(LedgerRecord).where(LedgerRecord.instance_id == instance_id)
    )
    return result.scalar_one_or_none()


async def get_certificate_by_number(
    session: AsyncSession, certificate_number: str
) -> Optional[Tuple[CertificateInstance, Optional[LedgerRecord]]]:
    """Certificate instance with its ledger record (if minted)"""
    result = await session.execute(
        select(CertificateInstance, LedgerRecord)
        .outerjoin(LedgerRecord, LedgerRecord.instance_id == CertificateInstance.id)
        .where(CertificateInstance.certificate_number == certificate_number)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def list_issued_certificates(
    session: AsyncSession, limit: int = 100, offset: int = 0
) -> List[Dict[str, Any]]:
    """Grants joined with holder, instance and ledger info, newest first"""
    result = await session.execute(
        select(UserCertificate, CertificateInstance, User, LedgerRecord)
        .join(CertificateInstance, CertificateInstance.id == UserCertificate.instance_id)
        .join(User, User.id == UserCertificate.user_id)
        .outerjoin(LedgerRecord, LedgerRecord.instance_id == CertificateInstance.id)
        .order_by(UserCertificate.created_at.desc(), UserCertificate.id.desc())
        .limit(limit)
        .offset(offset)
    )

    return [
        {"grant": grant, "instance": instance, "user": user, "ledger": ledger}
        for grant, instance, user, ledger in result.all()
    ]
