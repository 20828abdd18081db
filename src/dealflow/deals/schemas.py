"""Pydantic schemas for the deal pipeline -- configuration, deals, milestones, activities.

Defines all structured types for the deal lifecycle:
- Enums: DealStatus, StageKind, MilestoneStatus, ActivityType
- Deal type configuration: PipelineStage, MilestoneTemplate, DealType
- Deals: DealCreate/Update/Read, DealFilter, DealPage
- Milestones: MilestoneCreate/Update/Read
- Activities: ActivityCreate/Read
- Results: CommissionBreakdown, TransitionResult, PipelineView
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class DealStatus(str, Enum):
    """Derived lifecycle status overlaid on the stage code."""

    ACTIVE = "active"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


class StageKind(str, Enum):
    """Classification of a stage code within its deal type."""

    OPEN = "open"
    WON = "won"
    LOST = "lost"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ActivityType(str, Enum):
    """Kinds of audit entries recorded against a deal."""

    STAGE_CHANGE = "stage_change"
    NOTE = "note"
    CALL = "call"
    EMAIL = "email"
    MEETING = "meeting"
    SHOWING = "showing"
    DOCUMENT_UPLOAD = "document_upload"
    DOCUMENT_DELETE = "document_delete"
    MILESTONE_COMPLETE = "milestone_complete"
    FIELD_UPDATE = "field_update"
    OTHER = "other"


# Milestone types accepted for manually created milestones, in addition to
# whatever types the deal's own templates declare.
MANUAL_MILESTONE_TYPES: frozenset[str] = frozenset(
    {
        "custom",
        "inspection",
        "appraisal",
        "financing_approval",
        "final_walkthrough",
        "closing",
        "title_search",
        "survey",
        "insurance",
    }
)


# ── Deal Type Configuration ─────────────────────────────────────────────────


class PipelineStage(BaseModel):
    """A named, ordered step in a deal type's pipeline."""

    code: str = Field(min_length=1, max_length=50)
    name: str
    order: int = Field(ge=0)


class MilestoneTemplate(BaseModel):
    """Template expanded into a dated milestone when the trigger stage is reached."""

    type: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=255)
    days_offset: int = 0


class DealType(BaseModel):
    """Immutable pipeline configuration for one kind of deal.

    Stage membership is validated as a set: trigger, won and lost codes must
    all be declared pipeline stages, and stage codes must be unique.
    """

    id: str
    type_code: str
    type_name: str
    pipeline_stages: list[PipelineStage] = Field(min_length=1)
    default_milestones: list[MilestoneTemplate] = Field(default_factory=list)
    trigger_stage: str | None = None
    won_codes: list[str] = Field(default_factory=list)
    lost_codes: list[str] = Field(default_factory=list)
    default_commission_rate: Decimal | None = Field(default=None, ge=0, le=100)
    is_active: bool = True

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_stage_membership(self) -> DealType:
        codes = [s.code for s in self.pipeline_stages]
        if len(set(codes)) != len(codes):
            raise ValueError(f"duplicate stage codes in deal type {self.type_code}")
        known = set(codes)
        referenced = list(self.won_codes) + list(self.lost_codes)
        if self.trigger_stage is not None:
            referenced.append(self.trigger_stage)
        unknown = [c for c in referenced if c not in known]
        if unknown:
            raise ValueError(
                f"deal type {self.type_code} references undeclared stages: {unknown}"
            )
        overlap = set(self.won_codes) & set(self.lost_codes)
        if overlap:
            raise ValueError(f"stages cannot be both won and lost: {sorted(overlap)}")
        return self

    @property
    def stage_codes(self) -> list[str]:
        """Stage codes in pipeline order."""
        return [s.code for s in sorted(self.pipeline_stages, key=lambda s: s.order)]

    @property
    def initial_stage(self) -> str:
        """The lowest-ordered stage, where every new deal starts."""
        return min(self.pipeline_stages, key=lambda s: s.order).code

    @property
    def primary_lost_code(self) -> str | None:
        return self.lost_codes[0] if self.lost_codes else None

    def has_stage(self, code: str) -> bool:
        return any(s.code == code for s in self.pipeline_stages)

    def stage_order(self, code: str) -> int:
        for stage in self.pipeline_stages:
            if stage.code == code:
                return stage.order
        raise KeyError(code)

    def classify(self, code: str) -> StageKind:
        if code in self.won_codes:
            return StageKind.WON
        if code in self.lost_codes:
            return StageKind.LOST
        return StageKind.OPEN

    def is_trigger(self, code: str) -> bool:
        return self.trigger_stage is not None and self.trigger_stage == code


# ── Commission ──────────────────────────────────────────────────────────────


class CommissionBreakdown(BaseModel):
    """Derived commission amounts for a deal."""

    commission_amount: Decimal = Decimal("0.00")
    agent_commission: Decimal = Decimal("0.00")


# ── Deals ───────────────────────────────────────────────────────────────────


class DealCreate(BaseModel):
    """Schema for creating a new deal."""

    deal_type_id: str
    client_id: str
    deal_name: str | None = Field(default=None, max_length=255)
    deal_value: Decimal | None = Field(default=None, ge=0)
    commission_rate: Decimal | None = Field(default=None, ge=0, le=100)
    commission_split_percent: Decimal | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    deal_data: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None
    referral_source: str | None = Field(default=None, max_length=255)


class DealUpdate(BaseModel):
    """Partial update of a deal (only explicitly set fields are applied).

    Stage and status are absent on purpose: they only change through
    stage transitions.
    """

    deal_name: str | None = Field(default=None, max_length=255)
    client_id: str | None = None
    deal_value: Decimal | None = Field(default=None, ge=0)
    commission_rate: Decimal | None = Field(default=None, ge=0, le=100)
    commission_split_percent: Decimal | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    deal_data: dict[str, Any] | None = None
    notes: str | None = None
    referral_source: str | None = Field(default=None, max_length=255)
    lost_reason: str | None = None


# Fields that feed the commission derivation.
FINANCIAL_FIELDS: frozenset[str] = frozenset(
    {"deal_value", "commission_rate", "commission_split_percent"}
)

# Fields still editable once a deal is closed.
CLOSED_DEAL_EDITABLE_FIELDS: frozenset[str] = frozenset(
    {
        "deal_name",
        "expected_close_date",
        "deal_data",
        "notes",
        "referral_source",
        "lost_reason",
    }
)


class DealRead(BaseModel):
    """Schema for reading a deal (includes all persisted fields)."""

    id: str
    deal_type_id: str
    client_id: str
    deal_name: str
    current_stage: str
    last_active_stage: str | None = None
    status: DealStatus = DealStatus.ACTIVE
    deal_value: Decimal | None = None
    commission_rate: Decimal | None = None
    commission_split_percent: Decimal | None = None
    commission_amount: Decimal | None = None
    agent_commission: Decimal | None = None
    expected_close_date: date | None = None
    actual_close_date: date | None = None
    closed_at: datetime | None = None
    lost_reason: str | None = None
    deal_data: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None
    referral_source: str | None = None
    owner_id: str
    created_by: str
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_closed(self) -> bool:
        return self.status != DealStatus.ACTIVE


class DealFilter(BaseModel):
    """Filters and pagination for listing deals."""

    client_id: str | None = None
    status: DealStatus | None = None
    deal_type_id: str | None = None
    assigned_owner: str | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1)


class DealPage(BaseModel):
    """One page of deals plus the total match count."""

    items: list[DealRead] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20


# ── Milestones ──────────────────────────────────────────────────────────────


class MilestoneCreate(BaseModel):
    """Schema for a manually created milestone."""

    milestone_name: str = Field(min_length=1, max_length=255)
    milestone_type: str = "custom"
    scheduled_date: date | None = None
    notes: str | None = None


class MilestoneUpdate(BaseModel):
    """Partial milestone update: rename, reschedule, complete, or cancel."""

    milestone_name: str | None = Field(default=None, min_length=1, max_length=255)
    scheduled_date: date | None = None
    status: MilestoneStatus | None = None
    completed_date: date | None = None
    notes: str | None = None


class MilestoneRead(BaseModel):
    id: str
    deal_id: str
    milestone_type: str
    milestone_name: str
    scheduled_date: date | None = None
    status: MilestoneStatus = MilestoneStatus.PENDING
    completed_date: date | None = None
    notes: str | None = None
    created_by: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Activities ──────────────────────────────────────────────────────────────


class ActivityCreate(BaseModel):
    """Caller-initiated activity (note, call, email, meeting, ...)."""

    activity_type: ActivityType
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None


class ActivityRead(BaseModel):
    """Immutable audit entry as persisted."""

    id: str
    deal_id: str
    activity_type: ActivityType
    title: str
    description: str | None = None
    old_stage: str | None = None
    new_stage: str | None = None
    created_by: str
    created_at: datetime | None = None

    model_config = {"frozen": True}


# ── Results ─────────────────────────────────────────────────────────────────


class TransitionResult(BaseModel):
    """Outcome of a stage transition.

    milestone_error is set when trigger automation failed and was rolled
    back; the stage change itself is committed regardless.
    """

    deal: DealRead
    milestones_created: int = 0
    milestone_error: str | None = None


class PipelineStageView(BaseModel):
    code: str
    name: str
    deals: list[DealRead] = Field(default_factory=list)
    count: int = 0
    total_value: Decimal = Decimal("0")


class PipelineSummary(BaseModel):
    total_pipeline_value: Decimal = Decimal("0")
    expected_commission: Decimal = Decimal("0")
    active_deals: int = 0


class PipelineView(BaseModel):
    """Active deals of one deal type grouped by stage."""

    stages: list[PipelineStageView] = Field(default_factory=list)
    summary: PipelineSummary = Field(default_factory=PipelineSummary)
