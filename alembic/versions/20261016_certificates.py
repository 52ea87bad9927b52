"""create_certificate_tables

Revision ID: 5c3e7a1d9b42
Revises:
Create Date: 2026-10-16 10:12:31.402118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c3e7a1d9b42'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('username', sa.String(length=100), nullable=False, comment='Display name'),
        sa.Column('student_id', sa.String(length=50), nullable=True, comment='Student number'),
        sa.Column('points', sa.Integer(), nullable=False, server_default='0', comment='Points balance'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), comment='Registration timestamp'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_users_student_id'), 'users', ['student_id'], unique=True)

    op.create_table(
        'user_wallets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='Wallet owner'),
        sa.Column('wallet_address', sa.String(length=42), nullable=False, comment='0x-prefixed address'),
        sa.Column('bound_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), comment='Last (re)bind timestamp'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
        sa.UniqueConstraint('wallet_address'),
    )

    op.create_table(
        'points_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=50), nullable=False, comment='PointsEventType'),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False, comment='Balance after event'),
        sa.Column('checkin_day', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'checkin_day', name='uq_user_checkin_day'),
    )
    op.create_index(op.f('ix_points_events_user_id'), 'points_events', ['user_id'], unique=False)

    op.create_table(
        'activities',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('points_reward', sa.Integer(), nullable=False, server_default='0', comment='Points credited to each participant on end'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='published', comment='ActivityStatus'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'activity_participations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('activity_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='joined', comment='ParticipationStatus'),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['activity_id'], ['activities.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('activity_id', 'user_id', name='uq_activity_user'),
    )
    op.create_index(op.f('ix_activity_participations_user_id'), 'activity_participations', ['user_id'], unique=False)

    op.create_table(
        'certificate_rules',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('artifact_ref', sa.String(length=500), nullable=True, comment='Certificate artwork reference (URL or content hash)'),
        sa.Column('mode', sa.String(length=20), nullable=False, comment='RuleMode'),
        sa.Column('need_points', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('threshold_points', sa.Integer(), nullable=True),
        sa.Column('activity_id', sa.Integer(), nullable=True),
        sa.Column('auto_issue_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['activity_id'], ['activities.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_certificate_rules_mode'), 'certificate_rules', ['mode'], unique=False)

    op.create_table(
        'certificate_instances',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('certificate_number', sa.String(length=40), nullable=False, comment='Human-facing unique number'),
        sa.Column('holder_name', sa.String(length=100), nullable=False),
        sa.Column('holder_student_id', sa.String(length=50), nullable=True),
        sa.Column('certificate_type', sa.String(length=200), nullable=False, comment='Rule name snapshot'),
        sa.Column('organization', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('artifact_ref', sa.String(length=500), nullable=True),
        sa.Column('content_hash', sa.String(length=100), nullable=True, comment='Content store hash, set once pinned'),
        sa.Column('content_hash_is_placeholder', sa.Boolean(), nullable=False, server_default=sa.false(), comment='Hash computed locally because pinning failed'),
        sa.Column('is_valid', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('issue_date', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('certificate_number'),
    )

    op.create_table(
        'user_certificates',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('rule_id', sa.Integer(), nullable=True),
        sa.Column('instance_id', sa.Integer(), nullable=False),
        sa.Column('chain_status', sa.String(length=20), nullable=False, server_default='none', comment='ChainSyncState'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['rule_id'], ['certificate_rules.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['instance_id'], ['certificate_instances.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('instance_id'),
        sa.UniqueConstraint('user_id', 'rule_id', name='uq_user_rule'),
    )
    op.create_index(op.f('ix_user_certificates_user_id'), 'user_certificates', ['user_id'], unique=False)

    op.create_table(
        'certificate_ledger_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('instance_id', sa.Integer(), nullable=False),
        sa.Column('certificate_number', sa.String(length=40), nullable=False),
        sa.Column('token_id', sa.String(length=80), nullable=True),
        sa.Column('tx_hash', sa.String(length=80), nullable=False),
        sa.Column('block_number', sa.Integer(), nullable=True),
        sa.Column('content_hash', sa.String(length=100), nullable=True),
        sa.Column('owner_address', sa.String(length=42), nullable=False),
        sa.Column('custody', sa.String(length=20), nullable=False, comment='CustodyModel'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['instance_id'], ['certificate_instances.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('instance_id'),
    )
    op.create_index(
        op.f('ix_certificate_ledger_records_certificate_number'),
        'certificate_ledger_records',
        ['certificate_number'],
        unique=False,
    )

    op.create_table(
        'side_effect_tasks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('instance_id', sa.Integer(), nullable=False),
        sa.Column('task_type', sa.String(length=10), nullable=False, comment='SideEffectType'),
        sa.Column('status', sa.String(length=10), nullable=False, server_default='pending', comment='SideEffectStatus'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['instance_id'], ['certificate_instances.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('instance_id', 'task_type', name='uq_instance_task'),
    )
    op.create_index('idx_side_effect_status', 'side_effect_tasks', ['status'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_side_effect_status', table_name='side_effect_tasks')
    op.drop_table('side_effect_tasks')
    op.drop_index(op.f('ix_certificate_ledger_records_certificate_number'), table_name='certificate_ledger_records')
    op.drop_table('certificate_ledger_records')
    op.drop_index(op.f('ix_user_certificates_user_id'), table_name='user_certificates')
    op.drop_table('user_certificates')
    op.drop_table('certificate_instances')
    op.drop_index(op.f('ix_certificate_rules_mode'), table_name='certificate_rules')
    op.drop_table('certificate_rules')
    op.drop_index(op.f('ix_activity_participations_user_id'), table_name='activity_participations')
    op.drop_table('activity_participations')
    op.drop_table('activities')
    op.drop_index(op.f('ix_points_events_user_id'), table_name='points_events')
    op.drop_table('points_events')
    op.drop_table('user_wallets')
    op.drop_index(op.f('ix_users_student_id'), table_name='users')
    op.drop_table('users')
