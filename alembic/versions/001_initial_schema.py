"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'security_policies',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('level', sa.String(length=20), nullable=False),
        sa.Column('target_id', sa.String(length=255), nullable=True),
        sa.Column('target_type', sa.String(length=20), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('requires_manual_trigger', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "(level = 'global' AND target_id IS NULL AND target_type IS NULL)"
            " OR (level = 'group' AND target_id IS NOT NULL"
            " AND target_type IN ('department', 'role'))"
            " OR (level = 'user' AND target_id IS NOT NULL AND target_type = 'user')",
            name='ck_policy_target',
        ),
    )
    op.create_index('idx_policies_level_active', 'security_policies', ['level', 'is_active'])
    op.create_index('idx_policies_target', 'security_policies', ['target_type', 'target_id'])

    op.create_table(
        'policy_conditions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('policy_id', sa.Integer(), nullable=False),
        sa.Column('condition_type', sa.String(length=50), nullable=False),
        sa.Column('operator', sa.String(length=30), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('logical_operator', sa.String(length=3), nullable=False, server_default='AND'),
        sa.Column('condition_order', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['policy_id'], ['security_policies.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_policy_conditions_policy_id', 'policy_conditions', ['policy_id'])

    op.create_table(
        'policy_actions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('policy_id', sa.Integer(), nullable=False),
        sa.Column('action_type', sa.String(length=50), nullable=False),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('action_order', sa.Integer(), nullable=False),
        sa.Column('delay_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['policy_id'], ['security_policies.id'], ondelete='CASCADE'),
        sa.CheckConstraint('delay_minutes >= 0', name='ck_action_delay'),
    )
    op.create_index('ix_policy_actions_policy_id', 'policy_actions', ['policy_id'])

    op.create_table(
        'execution_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('policy_id', sa.Integer(), nullable=False),
        sa.Column('trigger_event_id', sa.String(length=64), nullable=False),
        sa.Column('action_order', sa.Integer(), nullable=False),
        sa.Column('action_type', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False),
        sa.Column('executed_at', sa.DateTime(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('event_snapshot', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('policy_id', 'trigger_event_id', 'action_order', name='uq_execution_key'),
    )
    op.create_index('ix_execution_records_status', 'execution_records', ['status'])
    op.create_index('idx_executions_policy_created', 'execution_records', ['policy_id', 'created_at'])
    op.create_index('idx_executions_status_scheduled', 'execution_records', ['status', 'scheduled_at'])

    op.create_table(
        'incidents',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('subject_id', sa.String(length=255), nullable=False),
        sa.Column('policy_id', sa.Integer(), nullable=True),
        sa.Column('trigger_event_id', sa.String(length=64), nullable=True),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('escalation_level', sa.String(length=20), nullable=False),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='open'),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_incidents_subject_id', 'incidents', ['subject_id'])
    op.create_index('idx_incidents_subject_created', 'incidents', ['subject_id', 'created_at'])

    op.create_table(
        'monitoring_windows',
        sa.Column('subject_id', sa.String(length=255), nullable=False),
        sa.Column('monitoring_level', sa.String(length=20), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('policy_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('subject_id'),
    )

    op.create_table(
        'access_restrictions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subject_id', sa.String(length=255), nullable=False),
        sa.Column('access_type', sa.String(length=20), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('policy_id', sa.Integer(), nullable=True),
        sa.Column('trigger_event_id', sa.String(length=64), nullable=True),
        sa.Column('disabled_at', sa.DateTime(), nullable=False),
        sa.Column('enabled_at', sa.DateTime(), nullable=True),
        sa.Column('enabled_by', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_access_subject_active', 'access_restrictions', ['subject_id', 'enabled_at'])

    op.create_table(
        'audit_entries',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('level', sa.String(length=20), nullable=False),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('subject_id', sa.String(length=255), nullable=True),
        sa.Column('policy_id', sa.Integer(), nullable=True),
        sa.Column('trigger_event_id', sa.String(length=64), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_entries_timestamp', 'audit_entries', ['timestamp'])
    op.create_index('ix_audit_entries_subject_id', 'audit_entries', ['subject_id'])


def downgrade() -> None:
    op.drop_index('ix_audit_entries_subject_id', table_name='audit_entries')
    op.drop_index('ix_audit_entries_timestamp', table_name='audit_entries')
    op.drop_table('audit_entries')

    op.drop_index('idx_access_subject_active', table_name='access_restrictions')
    op.drop_table('access_restrictions')

    op.drop_table('monitoring_windows')

    op.drop_index('idx_incidents_subject_created', table_name='incidents')
    op.drop_index('ix_incidents_subject_id', table_name='incidents')
    op.drop_table('incidents')

    op.drop_index('idx_executions_status_scheduled', table_name='execution_records')
    op.drop_index('idx_executions_policy_created', table_name='execution_records')
    op.drop_index('ix_execution_records_status', table_name='execution_records')
    op.drop_table('execution_records')

    op.drop_index('ix_policy_actions_policy_id', table_name='policy_actions')
    op.drop_table('policy_actions')

    op.drop_index('ix_policy_conditions_policy_id', table_name='policy_conditions')
    op.drop_table('policy_conditions')

    op.drop_index('idx_policies_target', table_name='security_policies')
    op.drop_index('idx_policies_level_active', table_name='security_policies')
    op.drop_table('security_policies')
