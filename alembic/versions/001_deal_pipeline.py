"""Create deal pipeline tables and seed system deal types.

Revision ID: 001_deal_pipeline
Revises:
Create Date: 2026-03-01

Creates five tables:
- deal_types: Pipeline configuration (stages, milestone templates, terminal codes)
- deals: Owner-scoped deals with commission and close tracking
- deal_milestones: Dated sub-tasks of a deal
- deal_activities: Append-only audit journal
- deal_milestone_triggers: At-most-once marker for milestone generation

Then inserts the system deal types (residential_sale, mortgage).
"""

import uuid
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

from src.dealflow.deals.seeds import SYSTEM_DEAL_TYPES

# revision identifiers, used by Alembic.
revision: str = "001_deal_pipeline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # ── deal_types table ────────────────────────────────────────────────

    deal_types = op.create_table(
        "deal_types",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("type_code", sa.String(50), nullable=False),
        sa.Column("type_name", sa.String(100), nullable=False),
        sa.Column("pipeline_stages", sa.JSON(), nullable=False),
        sa.Column("default_milestones", sa.JSON(), nullable=False),
        sa.Column("trigger_stage", sa.String(50), nullable=True),
        sa.Column("won_codes", sa.JSON(), nullable=False),
        sa.Column("lost_codes", sa.JSON(), nullable=False),
        sa.Column("default_commission_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column(
            "is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.UniqueConstraint("type_code", name="uq_deal_types_type_code"),
    )

    # ── deals table ─────────────────────────────────────────────────────

    op.create_table(
        "deals",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "deal_type_id",
            sa.Uuid(),
            sa.ForeignKey("deal_types.id", name="fk_deals_deal_type_id_deal_types"),
            nullable=False,
        ),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("deal_name", sa.String(255), nullable=False),
        sa.Column("current_stage", sa.String(50), nullable=False),
        sa.Column("last_active_stage", sa.String(50), nullable=True),
        sa.Column(
            "status", sa.String(50), server_default=sa.text("'active'"), nullable=False
        ),
        sa.Column("deal_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("commission_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column("commission_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("commission_split_percent", sa.Numeric(5, 2), nullable=True),
        sa.Column("agent_commission", sa.Numeric(12, 2), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("actual_close_date", sa.Date(), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lost_reason", sa.Text(), nullable=True),
        sa.Column("deal_data", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("referral_source", sa.String(255), nullable=True),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column(
            "is_deleted", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('active', 'closed_won', 'closed_lost')", name="ck_deals_status"
        ),
        sa.CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 100",
            name="ck_deals_commission_rate",
        ),
        sa.CheckConstraint(
            "commission_split_percent >= 0 AND commission_split_percent <= 100",
            name="ck_deals_commission_split",
        ),
        sa.CheckConstraint("deal_value >= 0", name="ck_deals_value_positive"),
    )
    op.create_index("idx_deals_owner_status", "deals", ["owner_id", "status"])
    op.create_index("idx_deals_client_id", "deals", ["client_id"])
    op.create_index("idx_deals_deal_type_id", "deals", ["deal_type_id"])

    # ── deal_milestones table ───────────────────────────────────────────

    op.create_table(
        "deal_milestones",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "deal_id",
            sa.Uuid(),
            sa.ForeignKey("deals.id", name="fk_deal_milestones_deal_id_deals"),
            nullable=False,
        ),
        sa.Column("milestone_type", sa.String(50), nullable=False),
        sa.Column("milestone_name", sa.String(255), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=True),
        sa.Column("completed_date", sa.Date(), nullable=True),
        sa.Column(
            "status", sa.String(20), server_default=sa.text("'pending'"), nullable=False
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'cancelled')",
            name="ck_deal_milestones_status",
        ),
    )
    op.create_index(
        "idx_deal_milestones_deal_scheduled",
        "deal_milestones",
        ["deal_id", "scheduled_date"],
    )

    # ── deal_activities table ───────────────────────────────────────────

    op.create_table(
        "deal_activities",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "deal_id",
            sa.Uuid(),
            sa.ForeignKey("deals.id", name="fk_deal_activities_deal_id_deals"),
            nullable=False,
        ),
        sa.Column("activity_type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("old_stage", sa.String(50), nullable=True),
        sa.Column("new_stage", sa.String(50), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.CheckConstraint(
            "activity_type IN ('stage_change', 'note', 'call', 'email', 'meeting', "
            "'showing', 'document_upload', 'document_delete', 'milestone_complete', "
            "'field_update', 'other')",
            name="ck_deal_activities_activity_type",
        ),
        sa.CheckConstraint(
            "activity_type != 'stage_change' OR "
            "(old_stage IS NOT NULL AND new_stage IS NOT NULL AND old_stage != new_stage)",
            name="ck_deal_activities_stage_change_stages",
        ),
    )
    op.create_index(
        "idx_deal_activities_deal_created",
        "deal_activities",
        ["deal_id", "created_at"],
    )

    # ── deal_milestone_triggers table ───────────────────────────────────

    op.create_table(
        "deal_milestone_triggers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "deal_id",
            sa.Uuid(),
            sa.ForeignKey("deals.id", name="fk_deal_milestone_triggers_deal_id_deals"),
            nullable=False,
        ),
        sa.Column("stage_code", sa.String(50), nullable=False),
        sa.Column("milestones_created", sa.Integer(), nullable=False),
        sa.Column("fired_by", sa.Uuid(), nullable=False),
        sa.Column(
            "fired_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.UniqueConstraint(
            "deal_id", "stage_code", name="uq_milestone_trigger_deal_stage"
        ),
    )

    # ── System deal types ───────────────────────────────────────────────

    op.bulk_insert(
        deal_types,
        [{"id": uuid.uuid4(), **row} for row in SYSTEM_DEAL_TYPES],
    )


def downgrade() -> None:
    op.drop_table("deal_milestone_triggers")
    op.drop_index("idx_deal_activities_deal_created", table_name="deal_activities")
    op.drop_table("deal_activities")
    op.drop_index("idx_deal_milestones_deal_scheduled", table_name="deal_milestones")
    op.drop_table("deal_milestones")
    op.drop_index("idx_deals_deal_type_id", table_name="deals")
    op.drop_index("idx_deals_client_id", table_name="deals")
    op.drop_index("idx_deals_owner_status", table_name="deals")
    op.drop_table("deals")
    op.drop_table("deal_types")
