"""Execution lease, incident execution key and system notifications

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table('execution_records') as batch_op:
        batch_op.add_column(sa.Column('lease_expires_at', sa.DateTime(), nullable=True))

    with op.batch_alter_table('incidents') as batch_op:
        batch_op.add_column(sa.Column('action_order', sa.Integer(), nullable=True))
        batch_op.create_unique_constraint(
            'uq_incident_execution_key', ['policy_id', 'trigger_event_id', 'action_order']
        )

    op.create_table(
        'system_notifications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('recipient_role', sa.String(length=50), nullable=False),
        sa.Column('notification_type', sa.String(length=50), nullable=False),
        sa.Column('priority', sa.String(length=20), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('subject_id', sa.String(length=255), nullable=True),
        sa.Column('policy_id', sa.Integer(), nullable=True),
        sa.Column('trigger_event_id', sa.String(length=64), nullable=True),
        sa.Column('action_order', sa.Integer(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'policy_id',
            'trigger_event_id',
            'action_order',
            'recipient_role',
            name='uq_notification_execution_key',
        ),
    )
    op.create_index(
        'idx_notifications_role_read',
        'system_notifications',
        ['recipient_role', 'is_read', 'created_at'],
    )


def downgrade() -> None:
    op.drop_index('idx_notifications_role_read', table_name='system_notifications')
    op.drop_table('system_notifications')

    with op.batch_alter_table('incidents') as batch_op:
        batch_op.drop_constraint('uq_incident_execution_key', type_='unique')
        batch_op.drop_column('action_order')

    with op.batch_alter_table('execution_records') as batch_op:
        batch_op.drop_column('lease_expires_at')
