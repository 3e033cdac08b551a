"""subscriptions and rollover markers

Revision ID: 202501150900
Revises:
Create Date: 2025-01-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202501150900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column(
            "category",
            sa.Enum(
                "video",
                "music",
                "game",
                "learning",
                "news",
                "storage",
                "other",
                name="subscriptioncategory",
            ),
            nullable=False,
        ),
        sa.Column("billing_day", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("history_month", sa.String(length=7)),
        sa.Column("created_from", sa.String(length=32)),
        sa.Column("description", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("price >= 0", name="ck_subscription_price_positive"),
        sa.CheckConstraint(
            "billing_day >= 1 AND billing_day <= 31",
            name="ck_subscription_billing_day_range",
        ),
        sa.UniqueConstraint(
            "created_from", "history_month", name="uq_subscription_snapshot_month"
        ),
    )
    op.create_index(
        "ix_subscriptions_user_history", "subscriptions", ["user_id", "history_month"]
    )
    op.create_index(
        "ix_subscriptions_user_active", "subscriptions", ["user_id", "is_active"]
    )
    # At most one live template per owner and name.
    op.create_index(
        "uq_subscription_live_owner_name",
        "subscriptions",
        ["user_id", "name"],
        unique=True,
        sqlite_where=sa.text("history_month IS NULL AND is_active = 1"),
        postgresql_where=sa.text("history_month IS NULL AND is_active"),
    )

    op.create_table(
        "rollover_markers",
        sa.Column("user_id", sa.Integer(), primary_key=True),
        sa.Column("last_run_on", sa.Date(), nullable=False),
        sa.Column("last_run_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("rollover_markers")
    op.drop_index("uq_subscription_live_owner_name", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_active", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_history", table_name="subscriptions")
    op.drop_table("subscriptions")
