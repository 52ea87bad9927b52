"""
Database models for Club Certificate Service

SQLAlchemy 2.0 models with full type hints
"""

from datetime import date, datetime, UTC
from typing import Optional
from enum import Enum

from sqlalchemy import (
    String,
    Text,
    Integer,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


# ===========================
# ENUMS
# ===========================


class RuleMode(str, Enum):
    """How a certificate rule is granted"""

    EXCHANGE = "exchange"  # Redeemed manually by spending points
    AUTO_POINTS = "auto_points"  # Granted once balance reaches threshold
    AUTO_ACTIVITY = "auto_activity"  # Granted once activity participation is finalized


class ParticipationStatus(str, Enum):
    """Activity participation status"""

    JOINED = "joined"
    COMPLETED = "completed"
    AWARDED = "awarded"  # Points for the activity were credited


class ActivityStatus(str, Enum):
    """Activity lifecycle"""

    PUBLISHED = "published"
    ONGOING = "ongoing"
    ENDED = "ended"


class ChainSyncState(str, Enum):
    """Per-grant ledger sync state"""

    NONE = "none"
    PENDING = "pending"  # Holder asked for the certificate to be minted
    MINTED = "minted"  # Ledger record exists


class CustodyModel(str, Enum):
    """Which wallet received the minted token"""

    HOLDER = "holder"  # Certificate holder's own bound wallet
    SYSTEM = "system"  # Configured system custody wallet


class SideEffectType(str, Enum):
    """Post-commit work attached to a certificate instance"""

    PIN = "pin"
    MINT = "mint"


class SideEffectStatus(str, Enum):
    """Outbox task status"""

    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"  # Terminal, needs a human


class PointsEventType(str, Enum):
    """Reasons a points balance changed"""

    CHECKIN = "checkin"
    ACTIVITY_REWARD = "activity_reward"
    ADMIN_GRANT = "admin_grant"
    CERTIFICATE_EXCHANGE = "certificate_exchange"


# ===========================
# USERS & POINTS
# ===========================


class User(Base):
    """
    Club member

    Points balance is only changed together with a PointsEvent row.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, comment="Display name")
    student_id: Mapped[Optional[str]] = mapped_column(
        String(50), unique=True, index=True, nullable=True, comment="Student number"
    )
    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False, comment="Points balance")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Registration timestamp",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username}, points={self.points})>"


class UserWallet(Base):
    """Bound chain wallet (one per user, one user per address)"""

    __tablename__ = "user_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        comment="Wallet owner",
    )
    wallet_address: Mapped[str] = mapped_column(
        String(42), unique=True, nullable=False, comment="0x-prefixed address"
    )
    bound_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Last (re)bind timestamp",
    )

    def __repr__(self) -> str:
        return f"<UserWallet(user_id={self.user_id}, wallet_address={self.wallet_address})>"


class PointsEvent(Base):
    """Points history entry (positive for earn, negative for spend)"""

    __tablename__ = "points_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, comment="PointsEventType")
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False, comment="Balance after event")
    # Set on check-in events only; one check-in per user per UTC day
    checkin_day: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (UniqueConstraint("user_id", "checkin_day", name="uq_user_checkin_day"),)


# ===========================
# ACTIVITIES
# ===========================


class Activity(Base):
    """Club activity that awards points once ended"""

    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    points_reward: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="Points credited to each participant on end"
    )
    status: Mapped[str] = mapped_column(
        String(20), default=ActivityStatus.PUBLISHED.value, nullable=False, comment="ActivityStatus"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Activity(id={self.id}, title='{self.title}', status={self.status})>"


class ActivityParticipation(Base):
    """User participation in an activity"""

    __tablename__ = "activity_participations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    activity_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("activities.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20), default=ParticipationStatus.JOINED.value, nullable=False, comment="ParticipationStatus"
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (UniqueConstraint("activity_id", "user_id", name="uq_activity_user"),)


# ===========================
# CERTIFICATES
# ===========================


class CertificateRule(Base):
    """
    Certificate issuance rule

    Mode invariants (enforced on creation):
    - need_points is 0 unless mode is exchange
    - threshold_points / activity_id are empty when mode is exchange
    """

    __tablename__ = "certificate_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    artifact_ref: Mapped[Optional[str]] = mapped_column(
        String(500), nullable=True, comment="Certificate artwork reference (URL or content hash)"
    )
    mode: Mapped[str] = mapped_column(String(20), nullable=False, index=True, comment="RuleMode")
    need_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    threshold_points: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    activity_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("activities.id", ondelete="SET NULL"),
        nullable=True,
    )
    auto_issue_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    @property
    def is_auto(self) -> bool:
        return self.mode != RuleMode.EXCHANGE.value

    def __repr__(self) -> str:
        return f"<CertificateRule(id={self.id}, name='{self.name}', mode={self.mode})>"


class CertificateInstance(Base):
    """
    Materialized certificate

    Holder fields are a snapshot taken at issuance time and are not kept in sync
    with the user. A certificate is valid whether or not it was pinned or minted.
    """

    __tablename__ = "certificate_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    certificate_number: Mapped[str] = mapped_column(
        String(40), unique=True, nullable=False, comment="Human-facing unique number"
    )
    holder_name: Mapped[str] = mapped_column(String(100), nullable=False)
    holder_student_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    certificate_type: Mapped[str] = mapped_column(String(200), nullable=False, comment="Rule name snapshot")
    organization: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    artifact_ref: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    content_hash: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, comment="Content store hash, set once pinned"
    )
    content_hash_is_placeholder: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, comment="Hash computed locally because pinning failed"
    )
    is_valid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    issue_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<CertificateInstance(id={self.id}, number={self.certificate_number})>"


class UserCertificate(Base):
    """
    Grant: one certificate per (user, rule)

    rule_id becomes NULL when the rule is deleted; the grant stays.
    """

    __tablename__ = "user_certificates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    rule_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("certificate_rules.id", ondelete="SET NULL"),
        nullable=True,
    )
    instance_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("certificate_instances.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    chain_status: Mapped[str] = mapped_column(
        String(20), default=ChainSyncState.NONE.value, nullable=False, comment="ChainSyncState"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (UniqueConstraint("user_id", "rule_id", name="uq_user_rule"),)

    def __repr__(self) -> str:
        return f"<UserCertificate(user_id={self.user_id}, rule_id={self.rule_id}, chain={self.chain_status})>"


class LedgerRecord(Base):
    """
    On-chain record of a minted certificate

    Presence of a row means the certificate is on chain. Rows are never updated.
    """

    __tablename__ = "certificate_ledger_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("certificate_instances.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    certificate_number: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    token_id: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    tx_hash: Mapped[str] = mapped_column(String(80), nullable=False)
    block_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    content_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    owner_address: Mapped[str] = mapped_column(String(42), nullable=False)
    custody: Mapped[str] = mapped_column(String(20), nullable=False, comment="CustodyModel")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<LedgerRecord(instance_id={self.instance_id}, tx_hash={self.tx_hash})>"


class SideEffectTask(Base):
    """
    Outbox row for post-commit work (pin / mint)

    Pending rows are drained by the reconciliation sweep.
    """

    __tablename__ = "side_effect_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("certificate_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    task_type: Mapped[str] = mapped_column(String(10), nullable=False, comment="SideEffectType")
    status: Mapped[str] = mapped_column(
        String(10), default=SideEffectStatus.PENDING.value, nullable=False, comment="SideEffectStatus"
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("instance_id", "task_type", name="uq_instance_task"),
        Index("idx_side_effect_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<SideEffectTask(instance_id={self.instance_id}, type={self.task_type}, status={self.status})>"
