"""
Credit ledger: balances, transactions, usage log and rules

Revision ID: 0001_credit_ledger
Revises:
Create Date: 2026-09-28 10:15:00
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_credit_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'account_balances',
        sa.Column('account_id', sa.String(length=128), primary_key=True),
        sa.Column('total_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('used_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('available_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('available_credits >= 0', name='ck_account_balances_available_non_negative'),
        sa.CheckConstraint('available_credits = total_credits - used_credits', name='ck_account_balances_available_consistent'),
    )

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('account_id', sa.String(length=128), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('reference_id', sa.String(length=128), nullable=True),
        sa.Column('rule_name', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='completed'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('account_id', 'kind', 'reference_id', name='uq_credit_tx_account_kind_reference'),
    )
    op.create_index('ix_credit_transactions_account_id', 'credit_transactions', ['account_id'])
    op.create_index('ix_credit_tx_account_created', 'credit_transactions', ['account_id', 'created_at'])
    op.create_index('ix_credit_tx_account_rule', 'credit_transactions', ['account_id', 'rule_name'])

    op.create_table(
        'credit_usage_log',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('transaction_id', sa.String(length=64), nullable=False),
        sa.Column('account_id', sa.String(length=128), nullable=False),
        sa.Column('usage_type', sa.String(length=64), nullable=False),
        sa.Column('reference_id', sa.String(length=128), nullable=True),
        sa.Column('credits_used', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_credit_usage_log_transaction_id', 'credit_usage_log', ['transaction_id'])
    op.create_index('ix_credit_usage_log_account_id', 'credit_usage_log', ['account_id'])

    op.create_table(
        'credit_rules',
        sa.Column('rule_name', sa.String(length=64), primary_key=True),
        sa.Column('rule_type', sa.String(length=32), nullable=False, server_default='one_time'),
        sa.Column('credit_amount', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('conditions', sa.JSON(), nullable=False),
        sa.Column('max_uses_per_account', sa.Integer(), nullable=True),
        sa.Column('valid_from', sa.DateTime(), nullable=False),
        sa.Column('valid_until', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('credit_rules')

    op.drop_index('ix_credit_usage_log_account_id', table_name='credit_usage_log')
    op.drop_index('ix_credit_usage_log_transaction_id', table_name='credit_usage_log')
    op.drop_table('credit_usage_log')

    op.drop_index('ix_credit_tx_account_rule', table_name='credit_transactions')
    op.drop_index('ix_credit_tx_account_created', table_name='credit_transactions')
    op.drop_index('ix_credit_transactions_account_id', table_name='credit_transactions')
    op.drop_table('credit_transactions')

    op.drop_table('account_balances')
