"""Deal pipeline persistence models.

Five SQLAlchemy models:
- DealTypeModel: Pipeline configuration (stages, milestone templates, terminal codes)
- DealModel: Individual deals, owner-scoped and soft-deleted
- MilestoneModel: Dated sub-tasks of a deal
- ActivityModel: Append-only audit journal
- MilestoneTriggerModel: Persisted marker that a deal's milestone batch was generated

Primary keys are generated client-side (uuid4) so the same models run on
PostgreSQL and on SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.dealflow.core.database import Base


class DealTypeModel(Base):
    """Deal type configuration row.

    pipeline_stages and default_milestones hold lists of JSON objects
    ({code, name, order} and {type, name, days_offset}); won/lost codes and
    the trigger stage reference codes from pipeline_stages.
    """

    __tablename__ = "deal_types"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    type_name: Mapped[str] = mapped_column(String(100), nullable=False)
    pipeline_stages: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    default_milestones: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    trigger_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    won_codes: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    lost_codes: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    default_commission_rate: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 2), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class DealModel(Base):
    """A sales deal moving through its type's pipeline.

    version increments on every write and is checked on stage transitions
    (optimistic concurrency). Rows are never hard-deleted.
    """

    __tablename__ = "deals"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'closed_won', 'closed_lost')", name="status"
        ),
        CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 100", name="commission_rate"
        ),
        CheckConstraint(
            "commission_split_percent >= 0 AND commission_split_percent <= 100",
            name="commission_split",
        ),
        CheckConstraint("deal_value >= 0", name="value_positive"),
        Index("idx_deals_owner_status", "owner_id", "status"),
        Index("idx_deals_client_id", "client_id"),
        Index("idx_deals_deal_type_id", "deal_type_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deal_types.id"), nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    deal_name: Mapped[str] = mapped_column(String(255), nullable=False)
    current_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    last_active_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(
        String(50), default="active", server_default=text("'active'"), nullable=False
    )
    deal_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    commission_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    commission_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    commission_split_percent: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 2), nullable=True
    )
    agent_commission: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    actual_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    lost_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    deal_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    referral_source: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    version: Mapped[int] = mapped_column(
        Integer, default=1, server_default=text("1"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class MilestoneModel(Base):
    """Dated sub-task of a deal, generated from a template or created manually."""

    __tablename__ = "deal_milestones"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed', 'cancelled')", name="status"
        ),
        Index("idx_deal_milestones_deal_scheduled", "deal_id", "scheduled_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=False
    )
    milestone_type: Mapped[str] = mapped_column(String(50), nullable=False)
    milestone_name: Mapped[str] = mapped_column(String(255), nullable=False)
    scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    completed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'"), nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class ActivityModel(Base):
    """Append-only audit entry. No code path updates or deletes these rows."""

    __tablename__ = "deal_activities"
    __table_args__ = (
        CheckConstraint(
            "activity_type IN ('stage_change', 'note', 'call', 'email', 'meeting', "
            "'showing', 'document_upload', 'document_delete', 'milestone_complete', "
            "'field_update', 'other')",
            name="activity_type",
        ),
        CheckConstraint(
            "activity_type != 'stage_change' OR "
            "(old_stage IS NOT NULL AND new_stage IS NOT NULL AND old_stage != new_stage)",
            name="stage_change_stages",
        ),
        Index("idx_deal_activities_deal_created", "deal_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=False
    )
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    old_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    new_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class MilestoneTriggerModel(Base):
    """Marker that the milestone batch for (deal, trigger stage) was generated.

    The unique constraint makes generation at-most-once even when two
    writers race past the existence check.
    """

    __tablename__ = "deal_milestone_triggers"
    __table_args__ = (
        UniqueConstraint("deal_id", "stage_code", name="uq_milestone_trigger_deal_stage"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=False
    )
    stage_code: Mapped[str] = mapped_column(String(50), nullable=False)
    milestones_created: Mapped[int] = mapped_column(Integer, nullable=False)
    fired_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    fired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
