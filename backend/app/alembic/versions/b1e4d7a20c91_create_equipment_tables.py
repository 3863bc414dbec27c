"""create_equipment_tables

Revision ID: b1e4d7a20c91
Revises:
Create Date: 2026-10-12 09:00:00.000000

Equipment mirror (equipment_master), archive, history and operator accounts.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = 'b1e4d7a20c91'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STATUSES = ('Down', 'Ready', 'Standby', 'Delay', 'Shiftchange')
equipment_status = sa.Enum(*STATUSES, name='equipmentstatus')
# тип уже создан вместе с equipment_master
equipment_status_ref = postgresql.ENUM(*STATUSES, name='equipmentstatus', create_type=False)
priority = sa.Enum('normal', 'high', name='priority')
lifecycle = sa.Enum('active', 'archived', name='lifecycle')
archive_reason = sa.Enum(
    'launched', 'completed', 'cancelled', 'auto_ready', 'status_changed', name='archivereason'
)
user_role = sa.Enum('admin', 'dispatcher', 'programmer', 'user', name='userrole')


def upgrade() -> None:
    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(50), nullable=False),
        sa.Column('full_name', sa.String(100), nullable=True),
        sa.Column('role', user_role, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('username', name='uq_users_username'),
    )

    # --- equipment_master ---
    op.create_table(
        'equipment_master',
        sa.Column('row_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('id', sa.String(50), nullable=False),
        sa.Column('equipment_name', sa.String(100), nullable=True),
        sa.Column('equipment_type', sa.String(100), nullable=False),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('section', sa.String(100), nullable=False),
        sa.Column('status', equipment_status, nullable=False),
        sa.Column('priority', priority, nullable=False),
        sa.Column('malfunction', sa.Text(), nullable=False),
        sa.Column('mechanic_name', sa.String(100), nullable=False),
        sa.Column('planned_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('planned_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('planned_hours', sa.Float(), nullable=False),
        # MSSQL provenance
        sa.Column('mssql_equipment_id', sa.Integer(), nullable=True),
        sa.Column('mssql_type', sa.String(50), nullable=True),
        sa.Column('mssql_status_id', sa.Integer(), nullable=True),
        sa.Column('mssql_reason', sa.String(200), nullable=True),
        sa.Column('last_sync_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lifecycle', lifecycle, nullable=False),
        sa.Column('manually_edited', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        'uq_equipment_master_active_id', 'equipment_master', ['id'],
        unique=True,
        postgresql_where=sa.text("lifecycle = 'active'"),
        sqlite_where=sa.text("lifecycle = 'active'"),
    )
    op.create_index('ix_equipment_master_status', 'equipment_master', ['status'])
    op.create_index('ix_equipment_master_lifecycle', 'equipment_master', ['lifecycle'])

    # --- equipment_archive ---
    op.create_table(
        'equipment_archive',
        sa.Column('archive_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('id', sa.String(50), nullable=False),
        sa.Column('equipment_name', sa.String(100), nullable=True),
        sa.Column('equipment_type', sa.String(100), nullable=False),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('section', sa.String(100), nullable=False),
        sa.Column('status', equipment_status_ref, nullable=False),
        sa.Column('exit_status', equipment_status_ref, nullable=True),
        sa.Column('priority', sa.String(20), nullable=False),
        sa.Column('malfunction', sa.Text(), nullable=False),
        sa.Column('mechanic_name', sa.String(100), nullable=False),
        sa.Column('planned_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('planned_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('planned_hours', sa.Float(), nullable=False),
        sa.Column('delay_hours', sa.Float(), nullable=False),
        sa.Column('mssql_equipment_id', sa.Integer(), nullable=True),
        sa.Column('mssql_status_id', sa.Integer(), nullable=True),
        sa.Column('mssql_reason', sa.String(200), nullable=True),
        sa.Column('last_sync_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_date', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            'completion_user_id', sa.Integer(),
            sa.ForeignKey('users.id', ondelete='SET NULL',
                          name='fk_equipment_archive_completion_user_id_users'),
            nullable=True,
        ),
        sa.Column('archive_reason', archive_reason, nullable=False),
    )
    op.create_index('ix_equipment_archive_completed', 'equipment_archive', ['completed_date'])
    op.create_index('ix_equipment_archive_equipment', 'equipment_archive', ['id'])

    # --- equipment_history ---
    op.create_table(
        'equipment_history',
        sa.Column('history_id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('equipment_id', sa.String(50), nullable=False),
        sa.Column(
            'user_id', sa.Integer(),
            sa.ForeignKey('users.id', ondelete='SET NULL',
                          name='fk_equipment_history_user_id_users'),
            nullable=True,
        ),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        'ix_equipment_history_equipment_ts', 'equipment_history', ['equipment_id', 'timestamp']
    )


def downgrade() -> None:
    op.drop_index('ix_equipment_history_equipment_ts', table_name='equipment_history')
    op.drop_table('equipment_history')
    op.drop_index('ix_equipment_archive_equipment', table_name='equipment_archive')
    op.drop_index('ix_equipment_archive_completed', table_name='equipment_archive')
    op.drop_table('equipment_archive')
    op.drop_index('ix_equipment_master_lifecycle', table_name='equipment_master')
    op.drop_index('ix_equipment_master_status', table_name='equipment_master')
    op.drop_index('uq_equipment_master_active_id', table_name='equipment_master')
    op.drop_table('equipment_master')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (user_role, archive_reason, lifecycle, priority, equipment_status):
        enum_type.drop(bind, checkfirst=True)
