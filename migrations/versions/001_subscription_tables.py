"""Create subscription_tiers and user_subscriptions tables.

Revision ID: 001_subscription_tables
Revises:
Create Date: 2026-10-16

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_subscription_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Create subscription_tiers table
    op.create_table(
        "subscription_tiers",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(18, 7), nullable=False),
        sa.Column(
            "benefits",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("signal_limit", sa.Integer(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "platform_commission",
            sa.Numeric(5, 2),
            nullable=False,
            server_default=sa.text("20"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_subscription_tiers"),
        sa.CheckConstraint("price >= 0", name="ck_subscription_tiers_price_non_negative"),
        sa.CheckConstraint(
            "platform_commission >= 0 AND platform_commission <= 100",
            name="ck_subscription_tiers_commission_range",
        ),
    )
    op.create_index(
        "ix_subscription_tiers_provider_id",
        "subscription_tiers",
        ["provider_id"],
    )

    # Create user_subscriptions table
    op.create_table(
        "user_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("tier_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("payer_address", sa.String(128), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_payment_ref", sa.String(128), nullable=True),
        sa.Column("last_payment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "payment_failure_count",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_user_subscriptions"),
        sa.ForeignKeyConstraint(
            ["tier_id"],
            ["subscription_tiers.id"],
            name="fk_user_subscriptions_tier_id",
            ondelete="RESTRICT",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'suspended', 'cancelled', 'expired')",
            name="ck_user_subscriptions_status",
        ),
        sa.CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_user_subscriptions_period_order",
        ),
    )
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"])
    op.create_index("ix_user_subscriptions_tier_id", "user_subscriptions", ["tier_id"])
    op.create_index(
        "ix_user_subscriptions_status_period_end",
        "user_subscriptions",
        ["status", "current_period_end"],
    )
    op.create_index(
        "ix_user_subscriptions_status_next_retry",
        "user_subscriptions",
        ["status", "next_retry_at"],
    )
    # At most one active subscription per user and tier
    op.create_index(
        "uq_user_subscriptions_active_user_tier",
        "user_subscriptions",
        ["user_id", "tier_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    op.drop_index("uq_user_subscriptions_active_user_tier", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_status_next_retry", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_status_period_end", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_tier_id", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_user_id", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")

    op.drop_index("ix_subscription_tiers_provider_id", table_name="subscription_tiers")
    op.drop_table("subscription_tiers")
