"""Create profiles and meds tables with alert dedup columns."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("full_name", sa.String(length=256), nullable=True),
        sa.Column("phone_numbers", sa.JSON(), nullable=True),
        sa.Column("message_channel_enabled", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("in_app_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "meds",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("dosage", sa.String(length=128), nullable=True),
        sa.Column("unit", sa.String(length=32), nullable=True),
        sa.Column("dose_amount", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("low_threshold", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("schedule_times", sa.JSON(), nullable=True),
        sa.Column("alerts_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("auto_deduct", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("last_taken", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_alert_key", sa.String(length=64), nullable=True),
        sa.Column("last_message_alert_key", sa.String(length=64), nullable=True),
        sa.Column("last_auto_dose_key", sa.String(length=64), nullable=True),
        sa.Column("last_low_stock_alert_date", sa.String(length=10), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_meds_user_id", "meds", ["user_id"], unique=False)
    op.create_index("ix_meds_alerts_enabled", "meds", ["alerts_enabled"], unique=False)
    op.create_index("ix_meds_created_at", "meds", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_meds_created_at", table_name="meds")
    op.drop_index("ix_meds_alerts_enabled", table_name="meds")
    op.drop_index("ix_meds_user_id", table_name="meds")
    op.drop_table("meds")
    op.drop_table("profiles")
