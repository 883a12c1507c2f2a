"""create refresh ledger, cooldown and advisor hub tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 09:00:00
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "refresh_run",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("external_run_id", sa.String(length=512), nullable=True),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("triggered_by", sa.String(length=255), nullable=False),
        sa.Column("trigger_source", sa.String(length=32), nullable=False, server_default="manual"),
        sa.Column("state", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("cooldown_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("cache_invalidated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_refresh_run_triggered_at", "refresh_run", ["triggered_at"])

    op.create_table(
        "refresh_cooldown",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("cooldown_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("run_id", sa.Uuid(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "advisor_mapping",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("advisor_name", sa.String(length=255), nullable=False),
        sa.Column("anonymous_advisor_id", sa.String(length=64), nullable=False),
        sa.Column("account_name", sa.String(length=255), nullable=True),
        sa.Column("anonymous_account_name", sa.String(length=255), nullable=True),
        sa.Column("billing_frequency", sa.String(length=32), nullable=True),
        sa.Column("is_excluded", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("advisor_name"),
        sa.UniqueConstraint("anonymous_advisor_id"),
    )

    op.create_table(
        "advisor_period_record",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("advisor_name", sa.String(length=255), nullable=False),
        sa.Column("account_name", sa.String(length=255), nullable=True),
        sa.Column("orion_representative_id", sa.String(length=64), nullable=True),
        sa.Column("period", sa.String(length=16), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("gross_revenue", sa.Float(), nullable=True),
        sa.Column("commissions_paid", sa.Float(), nullable=True),
        sa.Column("amount_earned", sa.Float(), nullable=True),
        sa.Column("billing_frequency", sa.String(length=32), nullable=True),
        sa.Column("billing_style", sa.String(length=64), nullable=True),
        sa.Column("data_source", sa.String(length=64), nullable=False),
        sa.Column("is_manually_overridden", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("original_gross_revenue", sa.Float(), nullable=True),
        sa.Column("original_commissions_paid", sa.Float(), nullable=True),
        sa.Column("override_reason", sa.Text(), nullable=True),
        sa.Column("overridden_by", sa.String(length=255), nullable=True),
        sa.Column("overridden_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("advisor_name", "period", name="uq_advisor_period_record_advisor_period"),
    )
    op.create_index("ix_advisor_period_record_period_start", "advisor_period_record", ["period_start"])


def downgrade() -> None:
    op.drop_index("ix_advisor_period_record_period_start", table_name="advisor_period_record")
    op.drop_table("advisor_period_record")
    op.drop_table("advisor_mapping")
    op.drop_table("refresh_cooldown")
    op.drop_index("ix_refresh_run_triggered_at", table_name="refresh_run")
    op.drop_table("refresh_run")
