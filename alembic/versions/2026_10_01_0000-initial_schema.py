"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create local tables. The stripe schema belongs to the sync engine."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('first_name', sa.String(255), nullable=True),
        sa.Column('last_name', sa.String(255), nullable=True),
        sa.Column('profile_image_url', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('email', name='uq_users_email'),
    )

    # ========================================================================
    # Create generations table
    # ========================================================================
    op.create_table(
        'generations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('palette', JSONB(), nullable=False),
        sa.Column('harmony', sa.String(50), nullable=True),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "source IN ('unlimited', 'subscription', 'credits', 'free')",
            name='ck_generation_source',
        ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_generations_user', ondelete='RESTRICT'),
    )

    # Monthly and lifetime counts are range scans on (user_id, created_at)
    op.create_index('idx_generations_user_created', 'generations', ['user_id', 'created_at'])

    # ========================================================================
    # Create user_credits table (one row per user, doubles as the quota lock)
    # ========================================================================
    op.create_table(
        'user_credits',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('credits >= 0', name='ck_user_credits_non_negative'),
        sa.UniqueConstraint('user_id', name='uq_user_credits_user'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_user_credits_user', ondelete='RESTRICT'),
    )

    # ========================================================================
    # Create credit_grants table (immutable ledger)
    # ========================================================================
    op.create_table(
        'credit_grants',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_before', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('stripe_event_id', sa.String(255), nullable=True),
        sa.Column('price_id', sa.String(255), nullable=True),
        sa.Column('payment_intent_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('amount > 0', name='ck_credit_grant_amount_positive'),
        sa.CheckConstraint('balance_after = balance_before + amount', name='ck_credit_grant_balance_consistency'),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_grant_idempotency'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_credit_grants_user', ondelete='RESTRICT'),
    )

    op.create_index('ix_credit_grants_user_id', 'credit_grants', ['user_id'])
    op.create_index('idx_credit_grants_created_at', 'credit_grants', ['created_at'])

    # ========================================================================
    # Create billing_events table (processed webhook log)
    # ========================================================================
    op.create_table(
        'billing_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('customer_id', sa.String(255), nullable=True),
        sa.Column('session_id', sa.String(255), nullable=True),
        sa.Column('price_id', sa.String(255), nullable=True),
        sa.Column('payment_intent_id', sa.String(255), nullable=True),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "outcome IN ('applied', 'skipped', 'unresolved', 'duplicate')",
            name='ck_billing_event_outcome',
        ),
    )

    op.create_index(
        'idx_billing_events_unresolved',
        'billing_events',
        ['updated_at'],
        postgresql_where=sa.text("outcome = 'unresolved'"),
    )


def downgrade() -> None:
    """Drop all local tables."""
    op.drop_table('billing_events')
    op.drop_table('credit_grants')
    op.drop_table('user_credits')
    op.drop_table('generations')
    op.drop_table('users')
