"""create employees, outbox and dedup tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

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
        'employees',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('position_name', sa.String(length=100), nullable=True),
        sa.Column('job_level_name', sa.String(length=100), nullable=True),
        sa.Column('department_name', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_employees_email'), 'employees', ['email'])

    op.create_table(
        'outbox_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('message_id', sa.String(length=255), nullable=False),
        sa.Column('entity_ref', sa.String(length=255), nullable=False),
        sa.Column('exchange', sa.String(length=255), nullable=False),
        sa.Column('routing_key', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id')
    )
    op.create_index('idx_outbox_status_next_retry', 'outbox_records', ['status', 'next_retry_at'])
    op.create_index(op.f('ix_outbox_records_entity_ref'), 'outbox_records', ['entity_ref'])

    op.create_table(
        'dedup_entries',
        sa.Column('message_id', sa.String(length=255), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('message_id')
    )


def downgrade() -> None:
    op.drop_table('dedup_entries')
    op.drop_index(op.f('ix_outbox_records_entity_ref'), table_name='outbox_records')
    op.drop_index('idx_outbox_status_next_retry', table_name='outbox_records')
    op.drop_table('outbox_records')
    op.drop_index(op.f('ix_employees_email'), table_name='employees')
    op.drop_table('employees')
