"""Add the plan catalog and subscription rows."""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001_plans_and_subscriptions"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "plans",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False, server_default=sa.text("'PAID'")),
        sa.Column("periodic_allowance", sa.Integer(), nullable=False),
        sa.Column("initial_allowance", sa.Integer(), nullable=True),
        sa.Column("period_days", sa.Integer(), nullable=False, server_default=sa.text("30")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.CheckConstraint("periodic_allowance > 0", name="ck_plans_periodic_allowance_positive"),
        sa.CheckConstraint("period_days > 0", name="ck_plans_period_days_positive"),
    )

    plan_table = sa.table(
        "plans",
        sa.column("id", sa.String()),
        sa.column("name", sa.String()),
        sa.column("tier", sa.String()),
        sa.column("periodic_allowance", sa.Integer()),
        sa.column("initial_allowance", sa.Integer()),
        sa.column("period_days", sa.Integer()),
        sa.column("is_active", sa.Boolean()),
    )

    op.bulk_insert(
        plan_table,
        [
            {
                "id": "free",
                "name": "Free",
                "tier": "FREE",
                "periodic_allowance": 200,
                "initial_allowance": 200,
                "period_days": 30,
                "is_active": True,
            },
            {
                "id": "plus",
                "name": "Plus",
                "tier": "PAID",
                "periodic_allowance": 2000,
                "initial_allowance": None,
                "period_days": 30,
                "is_active": True,
            },
            {
                "id": "premium",
                "name": "Premium",
                "tier": "PAID",
                "periodic_allowance": 5000,
                "initial_allowance": None,
                "period_days": 30,
                "is_active": True,
            },
        ],
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'ACTIVE'")),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_granted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_renewal_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("renewal_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("provider_reference", sa.String(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "ix_subscriptions_provider_reference", "subscriptions", ["provider_reference"]
    )
    op.create_index("ix_subscriptions_status_id", "subscriptions", ["status", "id"])
    op.create_index(
        "uq_subscriptions_user_active",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )


def downgrade() -> None:
    op.drop_index("uq_subscriptions_user_active", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_provider_reference", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("plans")
