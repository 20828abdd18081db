"""Deal service -- the external interface of the deal pipeline.

Wires the catalog, commission calculator, repository, activity log,
milestone generator and stage transition engine behind one owner-scoped
API. Request handlers (out of scope here) call these methods with the
authenticated user's id as owner_id.

Exports:
    DealService: Create/read/update/delete deals, change stages, record
        activities, manage milestones, and build pipeline views.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealflow.config import Settings, get_settings
from src.dealflow.deals import commission
from src.dealflow.deals.activity import ActivityLog
from src.dealflow.deals.catalog import DealTypeCatalog
from src.dealflow.deals.errors import NotFoundError, ValidationError
from src.dealflow.deals.milestones import MilestoneGenerator
from src.dealflow.deals.repository import DealRepository, today
from src.dealflow.deals.schemas import (
    CLOSED_DEAL_EDITABLE_FIELDS,
    FINANCIAL_FIELDS,
    MANUAL_MILESTONE_TYPES,
    ActivityCreate,
    ActivityRead,
    ActivityType,
    DealCreate,
    DealFilter,
    DealPage,
    DealRead,
    DealStatus,
    DealType,
    DealUpdate,
    MilestoneCreate,
    MilestoneRead,
    MilestoneStatus,
    MilestoneUpdate,
    PipelineView,
    TransitionResult,
)
from src.dealflow.deals.transitions import StageTransitionEngine

logger = structlog.get_logger(__name__)


def _require_uuid(value: str, field: str) -> None:
    try:
        uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be a valid UUID", field=field) from None


def derive_deal_name(deal_data: dict[str, Any]) -> str:
    """Build a display name from type-specific deal data.

    Uses the first part of property_address, else "$<loan_amount> Loan",
    else "New Deal".
    """
    address = deal_data.get("property_address")
    if isinstance(address, str) and address.strip():
        return address.split(",")[0].strip()

    loan_amount = deal_data.get("loan_amount")
    if loan_amount:
        try:
            amount = Decimal(str(loan_amount))
        except InvalidOperation:
            return "New Deal"
        if amount == amount.to_integral_value():
            amount = amount.quantize(Decimal("1"))
        return f"${amount:,} Loan"

    return "New Deal"


class DealService:
    """Owner-scoped operations on deals, activities and milestones.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        settings: Optional settings override (defaults to get_settings()).
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.repository = DealRepository(session_factory)
        self.catalog = DealTypeCatalog(session_factory)
        self.activity_log = ActivityLog(
            self.repository, timeout_seconds=self._settings.ACTIVITY_LOG_TIMEOUT_SECONDS
        )
        self.milestone_generator = MilestoneGenerator(self.repository, self.activity_log)
        self.engine = StageTransitionEngine(
            self.repository,
            self.catalog,
            self.milestone_generator,
            self.activity_log,
            settings=self._settings,
        )

    # ── Deal Types ──────────────────────────────────────────────────────────

    async def get_deal_types(self) -> list[DealType]:
        """List active deal types."""
        return await self.catalog.list_active()

    # ── Deals ───────────────────────────────────────────────────────────────

    async def create_deal(self, data: DealCreate, owner_id: str) -> DealRead:
        """Create a deal at its type's initial stage.

        The deal name is derived from deal_data when not given, and the
        type's default commission rate applies when no rate is given.

        Raises:
            ValidationError: Unknown deal type, malformed client id, or
                invalid commission inputs.
        """
        try:
            deal_type = await self.catalog.get(data.deal_type_id)
        except NotFoundError as exc:
            raise ValidationError(str(exc), field="deal_type_id") from exc
        _require_uuid(data.client_id, "client_id")

        rate = (
            data.commission_rate
            if data.commission_rate is not None
            else deal_type.default_commission_rate
        )
        breakdown = commission.calculate(
            data.deal_value, rate, data.commission_split_percent
        )
        deal_name = (data.deal_name or "").strip() or derive_deal_name(data.deal_data)

        async with self.repository.unit_of_work() as session:
            deal = await self.repository.create_deal(
                owner_id,
                data.model_copy(update={"commission_rate": rate}),
                deal_name=deal_name,
                initial_stage=deal_type.initial_stage,
                commission=breakdown,
                session=session,
            )
            await self.activity_log.append_best_effort(
                deal.id,
                ActivityType.OTHER,
                "Deal Created",
                description=f"Created deal: {deal.deal_name}",
                author_id=owner_id,
                session=session,
            )

        logger.info(
            "deals.created",
            deal_id=deal.id,
            owner_id=owner_id,
            deal_type=deal_type.type_code,
            stage=deal.current_stage,
        )
        return deal

    async def get_deal(self, deal_id: str, owner_id: str) -> DealRead:
        return await self.repository.get_deal(owner_id, deal_id)

    async def list_deals(
        self, filters: DealFilter | None, owner_id: str
    ) -> DealPage:
        """List the caller's deals; page_size is capped by configuration."""
        if filters is None:
            filters = DealFilter(page_size=self._settings.DEALS_PAGE_SIZE_DEFAULT)
        return await self.repository.list_deals(
            owner_id, filters, max_page_size=self._settings.DEALS_PAGE_SIZE_MAX
        )

    async def update_deal(
        self, deal_id: str, changes: DealUpdate, owner_id: str
    ) -> DealRead:
        """Apply a partial update to a deal.

        Commission amounts are recomputed whenever value, rate or split
        change, merging the new values with the stored ones. Closed deals
        only accept metadata edits.

        Raises:
            NotFoundOrAccessDenied: Deal missing or not owned by caller.
            ValidationError: Frozen field on a closed deal, lost_reason on a
                deal that is not lost, or invalid values.
        """
        fields = changes.model_dump(exclude_unset=True)
        if not fields:
            return await self.get_deal(deal_id, owner_id)

        if "deal_name" in fields and not (fields["deal_name"] or "").strip():
            raise ValidationError("deal_name cannot be empty", field="deal_name")
        if fields.get("client_id") is None and "client_id" in fields:
            raise ValidationError("client_id cannot be cleared", field="client_id")
        if fields.get("client_id") is not None:
            _require_uuid(fields["client_id"], "client_id")
        if "deal_data" in fields and fields["deal_data"] is None:
            fields["deal_data"] = {}

        async with self.repository.unit_of_work() as session:
            deal = await self.repository.get_deal(
                owner_id, deal_id, for_update=True, session=session
            )

            if deal.is_closed:
                frozen = sorted(set(fields) - CLOSED_DEAL_EDITABLE_FIELDS)
                if frozen:
                    raise ValidationError(
                        f"Cannot edit {', '.join(frozen)} on a closed deal",
                        field=frozen[0],
                    )

            if "lost_reason" in fields:
                self._check_lost_reason_edit(deal, fields["lost_reason"])

            if FINANCIAL_FIELDS & set(fields):
                breakdown = commission.calculate(
                    fields.get("deal_value", deal.deal_value),
                    fields.get("commission_rate", deal.commission_rate),
                    fields.get(
                        "commission_split_percent", deal.commission_split_percent
                    ),
                )
                fields["commission_amount"] = breakdown.commission_amount
                fields["agent_commission"] = breakdown.agent_commission

            updated = await self.repository.update_deal(
                owner_id, deal_id, fields, session=session
            )
            changed = sorted(k for k in changes.model_dump(exclude_unset=True))
            await self.activity_log.append_best_effort(
                deal_id,
                ActivityType.FIELD_UPDATE,
                "Deal Updated",
                description=f"Updated fields: {', '.join(changed)}",
                author_id=owner_id,
                session=session,
            )

        logger.info("deals.updated", deal_id=deal_id, owner_id=owner_id, fields=changed)
        return updated

    def _check_lost_reason_edit(self, deal: DealRead, reason: str | None) -> None:
        if deal.status != DealStatus.CLOSED_LOST:
            raise ValidationError(
                "lost_reason can only be set on lost deals", field="lost_reason"
            )
        min_length = self._settings.LOST_REASON_MIN_LENGTH
        if reason is None or len(reason.strip()) < min_length:
            raise ValidationError(
                f"Lost reason required (minimum {min_length} characters)",
                field="lost_reason",
            )

    async def delete_deal(self, deal_id: str, owner_id: str) -> None:
        """Soft-delete a deal. It disappears from every owner-scoped read."""
        async with self.repository.unit_of_work() as session:
            await self.repository.soft_delete_deal(owner_id, deal_id, session=session)
            await self.activity_log.append_best_effort(
                deal_id,
                ActivityType.OTHER,
                "Deal Deleted",
                description="Deal marked as deleted",
                author_id=owner_id,
                session=session,
            )
        logger.info("deals.deleted", deal_id=deal_id, owner_id=owner_id)

    # ── Stage Changes ───────────────────────────────────────────────────────

    async def change_stage(
        self,
        deal_id: str,
        new_stage: str,
        lost_reason: str | None,
        owner_id: str,
    ) -> TransitionResult:
        """Move a deal to new_stage. See StageTransitionEngine.transition."""
        return await self.engine.transition(
            deal_id, new_stage, owner_id, lost_reason=lost_reason
        )

    async def mark_lost(self, deal_id: str, lost_reason: str, owner_id: str) -> DealRead:
        """Move a deal to its type's lost stage and return the updated deal."""
        result = await self.engine.mark_lost(deal_id, lost_reason, owner_id)
        return result.deal

    # ── Activities ──────────────────────────────────────────────────────────

    async def create_activity(
        self, deal_id: str, data: ActivityCreate, owner_id: str
    ) -> ActivityRead:
        """Record a caller-initiated activity (note, call, email, ...).

        Raises:
            ValidationError: For stage_change entries, which only stage
                transitions write.
        """
        if data.activity_type == ActivityType.STAGE_CHANGE:
            raise ValidationError(
                "stage_change activities are recorded by stage transitions",
                field="activity_type",
            )
        async with self.repository.unit_of_work() as session:
            await self.repository.get_deal(owner_id, deal_id, session=session)
            return await self.activity_log.append(
                deal_id,
                data.activity_type,
                data.title,
                description=data.description,
                author_id=owner_id,
                session=session,
            )

    async def list_activities(
        self, deal_id: str, owner_id: str, limit: int = 100
    ) -> list[ActivityRead]:
        async with self.repository.unit_of_work() as session:
            await self.repository.get_deal(owner_id, deal_id, session=session)
            return await self.activity_log.list_for_deal(
                deal_id, limit=limit, session=session
            )

    # ── Milestones ──────────────────────────────────────────────────────────

    async def create_milestone(
        self, deal_id: str, data: MilestoneCreate, owner_id: str
    ) -> MilestoneRead:
        """Add a manual milestone to a deal.

        Raises:
            ValidationError: If milestone_type is neither a manual type nor
                one of the deal type's template types.
        """
        async with self.repository.unit_of_work() as session:
            deal = await self.repository.get_deal(owner_id, deal_id, session=session)
            deal_type = await self.catalog.get(deal.deal_type_id)
            allowed = MANUAL_MILESTONE_TYPES | {t.type for t in deal_type.default_milestones}
            if data.milestone_type not in allowed:
                raise ValidationError(
                    f"Invalid milestone type: {data.milestone_type}",
                    field="milestone_type",
                )

            milestone = await self.repository.create_milestone(
                owner_id, deal_id, data, session=session
            )
            await self.activity_log.append_best_effort(
                deal_id,
                ActivityType.OTHER,
                "Milestone Added",
                description=f"Added milestone: {milestone.milestone_name}",
                author_id=owner_id,
                session=session,
            )
        return milestone

    async def update_milestone(
        self,
        deal_id: str,
        milestone_id: str,
        changes: MilestoneUpdate,
        owner_id: str,
    ) -> MilestoneRead:
        """Rename, reschedule, complete or cancel a milestone.

        Completing without a completed_date stamps today; moving back to a
        non-completed status clears it.
        """
        fields = changes.model_dump(exclude_unset=True)
        for required in ("milestone_name", "status"):
            if required in fields and fields[required] is None:
                raise ValidationError(f"{required} cannot be cleared", field=required)

        status = fields.get("status")
        if status == MilestoneStatus.COMPLETED and fields.get("completed_date") is None:
            fields["completed_date"] = today()
        elif status is not None and status != MilestoneStatus.COMPLETED:
            fields.setdefault("completed_date", None)

        async with self.repository.unit_of_work() as session:
            current = await self.repository.get_milestone(
                owner_id, deal_id, milestone_id, session=session
            )
            if not fields:
                return current
            updated = await self.repository.update_milestone(
                owner_id, deal_id, milestone_id, fields, session=session
            )
            if (
                updated.status == MilestoneStatus.COMPLETED
                and current.status != MilestoneStatus.COMPLETED
            ):
                await self.activity_log.append_best_effort(
                    deal_id,
                    ActivityType.MILESTONE_COMPLETE,
                    "Milestone Completed",
                    description=f"Completed milestone: {updated.milestone_name}",
                    author_id=owner_id,
                    session=session,
                )
        return updated

    async def delete_milestone(
        self, deal_id: str, milestone_id: str, owner_id: str
    ) -> None:
        async with self.repository.unit_of_work() as session:
            removed = await self.repository.delete_milestone(
                owner_id, deal_id, milestone_id, session=session
            )
            await self.activity_log.append_best_effort(
                deal_id,
                ActivityType.OTHER,
                "Milestone Deleted",
                description=f"Deleted milestone: {removed.milestone_name}",
                author_id=owner_id,
                session=session,
            )

    async def list_milestones(self, deal_id: str, owner_id: str) -> list[MilestoneRead]:
        return await self.repository.list_milestones(owner_id, deal_id)

    # ── Pipeline ────────────────────────────────────────────────────────────

    async def get_pipeline(
        self,
        owner_id: str,
        deal_type_id: str | None = None,
        stage_limit: int | None = None,
    ) -> PipelineView:
        """Active deals of one deal type grouped by stage.

        Without deal_type_id the type of the caller's most recent active deal
        is used; a caller with no active deals gets an empty view.
        """
        if deal_type_id is None:
            latest = await self.repository.list_deals(
                owner_id, DealFilter(status=DealStatus.ACTIVE, page_size=1)
            )
            if not latest.items:
                return PipelineView()
            deal_type_id = latest.items[0].deal_type_id

        deal_type = await self.catalog.get(deal_type_id)
        return await self.repository.pipeline(
            owner_id,
            deal_type,
            stage_limit=stage_limit or self._settings.DEALS_PAGE_SIZE_DEFAULT,
        )
