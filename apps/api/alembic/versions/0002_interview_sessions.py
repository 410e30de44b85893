"""
Interview sessions

Revision ID: 0002_interview_sessions
Revises: 0001_credit_ledger
Create Date: 2026-09-28 10:40:00
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002_interview_sessions'
down_revision = '0001_credit_ledger'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'interview_sessions',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('account_id', sa.String(length=128), nullable=False),
        sa.Column('session_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('company', sa.String(length=255), nullable=False),
        sa.Column('position', sa.String(length=255), nullable=False),
        sa.Column('language', sa.String(length=64), nullable=True),
        sa.Column('ai_model', sa.String(length=128), nullable=True),
        sa.Column('extra_context', sa.Text(), nullable=True),
        sa.Column('resume_reference', sa.String(length=255), nullable=True),
        sa.Column('planned_duration_minutes', sa.Integer(), nullable=False),
        sa.Column('session_metadata', sa.JSON(), nullable=False),
        sa.Column('session_data', sa.JSON(), nullable=False),
        sa.Column('ai_usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('duration_minutes', sa.Numeric(10, 2), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_interview_sessions_account_id', 'interview_sessions', ['account_id'])
    op.create_index('ix_interview_sessions_account_created', 'interview_sessions', ['account_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_interview_sessions_account_created', table_name='interview_sessions')
    op.drop_index('ix_interview_sessions_account_id', table_name='interview_sessions')
    op.drop_table('interview_sessions')
