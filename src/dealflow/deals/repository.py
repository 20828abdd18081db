"""Deal pipeline repository -- owner-scoped async persistence for deals.

Provides DealRepository with the session_factory callable pattern. Handles
serialization between Pydantic schemas and SQLAlchemy models for deals,
milestones, activities, and milestone trigger markers.

Every deal-level method takes owner_id as its first argument. A deal that is
missing, soft-deleted, or owned by someone else raises the same
NotFoundOrAccessDenied so callers cannot probe for existence.

Methods accept an optional ``session``: when given they join the caller's
unit of work and never commit; otherwise they open and commit their own.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import aclosing, asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealflow.deals.errors import (
    ConflictError,
    NotFoundOrAccessDenied,
    PersistenceError,
    ValidationError,
)
from src.dealflow.deals.models import (
    ActivityModel,
    DealModel,
    MilestoneModel,
    MilestoneTriggerModel,
)
from src.dealflow.deals.schemas import (
    ActivityRead,
    ActivityType,
    CommissionBreakdown,
    DealCreate,
    DealFilter,
    DealPage,
    DealRead,
    DealStatus,
    DealType,
    MilestoneCreate,
    MilestoneRead,
    MilestoneStatus,
    PipelineStageView,
    PipelineSummary,
    PipelineView,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_id(value: str, resource: str = "deal") -> uuid.UUID:
    """Parse a UUID string; malformed ids are indistinguishable from missing ones."""
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFoundOrAccessDenied(resource) from None


def _parse_filter_id(value: str, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}", field=field) from None


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_deal(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=str(model.id),
        deal_type_id=str(model.deal_type_id),
        client_id=str(model.client_id),
        deal_name=model.deal_name,
        current_stage=model.current_stage,
        last_active_stage=model.last_active_stage,
        status=DealStatus(model.status),
        deal_value=model.deal_value,
        commission_rate=model.commission_rate,
        commission_split_percent=model.commission_split_percent,
        commission_amount=model.commission_amount,
        agent_commission=model.agent_commission,
        expected_close_date=model.expected_close_date,
        actual_close_date=model.actual_close_date,
        closed_at=model.closed_at,
        lost_reason=model.lost_reason,
        deal_data=model.deal_data or {},
        notes=model.notes,
        referral_source=model.referral_source,
        owner_id=str(model.owner_id),
        created_by=str(model.created_by),
        version=model.version,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_milestone(model: MilestoneModel) -> MilestoneRead:
    """Convert MilestoneModel to MilestoneRead schema."""
    return MilestoneRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        milestone_type=model.milestone_type,
        milestone_name=model.milestone_name,
        scheduled_date=model.scheduled_date,
        status=MilestoneStatus(model.status),
        completed_date=model.completed_date,
        notes=model.notes,
        created_by=str(model.created_by),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_activity(model: ActivityModel) -> ActivityRead:
    """Convert ActivityModel to ActivityRead schema."""
    return ActivityRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        activity_type=ActivityType(model.activity_type),
        title=model.title,
        description=model.description,
        old_stage=model.old_stage,
        new_stage=model.new_stage,
        created_by=str(model.created_by),
        created_at=model.created_at,
    )


def _uuid_fields(values: dict[str, Any]) -> dict[str, Any]:
    """Convert id-valued update fields from str to UUID."""
    converted = dict(values)
    if isinstance(converted.get("client_id"), str):
        converted["client_id"] = uuid.UUID(converted["client_id"])
    return converted


# ── Repository ──────────────────────────────────────────────────────────────


class DealRepository:
    """Owner-scoped async persistence for deals, milestones, and activities.

    Also the unit of atomicity: unit_of_work() yields one session whose
    writes commit together or roll back together.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Unit of Work ────────────────────────────────────────────────────────

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[AsyncSession]:
        """Yield a session committed on success and rolled back on any error.

        SQLAlchemy errors are translated to PersistenceError; domain errors
        propagate unchanged after the rollback.
        """
        async with aclosing(self._session_factory()) as sessions:
            async for session in sessions:
                try:
                    yield session
                    await session.commit()
                except SQLAlchemyError as exc:
                    await session.rollback()
                    logger.error("deals.persistence_error", error=str(exc))
                    raise PersistenceError(f"Storage operation failed: {exc}") from exc
                except BaseException:
                    await session.rollback()
                    raise
                break

    @asynccontextmanager
    async def _scope(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        """Join the caller's session, or run in a fresh unit of work."""
        if session is not None:
            yield session
            return
        async with self.unit_of_work() as owned:
            yield owned

    async def _get_owned_model(
        self,
        session: AsyncSession,
        owner_id: str,
        deal_id: str,
        *,
        for_update: bool = False,
    ) -> DealModel:
        stmt = select(DealModel).where(
            DealModel.id == _parse_id(deal_id),
            DealModel.owner_id == _parse_id(owner_id),
            DealModel.is_deleted.is_(False),
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt.execution_options(populate_existing=True))
        model = result.scalar_one_or_none()
        if model is None:
            raise NotFoundOrAccessDenied("deal")
        return model

    # ── Deals ───────────────────────────────────────────────────────────────

    async def create_deal(
        self,
        owner_id: str,
        data: DealCreate,
        *,
        deal_name: str,
        initial_stage: str,
        commission: CommissionBreakdown,
        session: AsyncSession | None = None,
    ) -> DealRead:
        """Insert a new active deal at its type's initial stage.

        Args:
            owner_id: Owner (and creator) UUID string.
            data: DealCreate with caller-supplied fields.
            deal_name: Resolved display name.
            initial_stage: Lowest-ordered stage of the deal type.
            commission: Derived commission amounts.
            session: Optional session to join.

        Returns:
            DealRead with all persisted fields.
        """
        async with self._scope(session) as s:
            owner = _parse_id(owner_id)
            model = DealModel(
                deal_type_id=uuid.UUID(data.deal_type_id),
                client_id=uuid.UUID(data.client_id),
                deal_name=deal_name,
                current_stage=initial_stage,
                status=DealStatus.ACTIVE.value,
                deal_value=data.deal_value,
                commission_rate=data.commission_rate,
                commission_split_percent=data.commission_split_percent,
                commission_amount=commission.commission_amount,
                agent_commission=commission.agent_commission,
                expected_close_date=data.expected_close_date,
                deal_data=data.deal_data,
                notes=data.notes,
                referral_source=data.referral_source,
                owner_id=owner,
                created_by=owner,
                version=1,
                created_at=_utcnow(),
            )
            s.add(model)
            await s.flush()
            await s.refresh(model)
            return _model_to_deal(model)

    async def get_deal(
        self,
        owner_id: str,
        deal_id: str,
        *,
        for_update: bool = False,
        session: AsyncSession | None = None,
    ) -> DealRead:
        """Get a deal by ID, scoped to its owner.

        Args:
            owner_id: Caller UUID string.
            deal_id: Deal UUID string.
            for_update: Take a row lock (honoured by PostgreSQL).
            session: Optional session to join.

        Raises:
            NotFoundOrAccessDenied: Missing, deleted, or not owned by caller.
        """
        async with self._scope(session) as s:
            model = await self._get_owned_model(s, owner_id, deal_id, for_update=for_update)
            return _model_to_deal(model)

    async def list_deals(
        self,
        owner_id: str,
        filters: DealFilter | None = None,
        *,
        max_page_size: int = 100,
    ) -> DealPage:
        """List the caller's deals with optional filters, newest first.

        page_size is clamped to max_page_size. An assigned_owner filter that
        names someone other than the caller matches nothing.
        """
        filters = filters or DealFilter()
        page_size = min(filters.page_size, max_page_size)
        owner = _parse_id(owner_id)
        client_id = (
            _parse_filter_id(filters.client_id, "client_id")
            if filters.client_id is not None
            else None
        )
        deal_type_id = (
            _parse_filter_id(filters.deal_type_id, "deal_type_id")
            if filters.deal_type_id is not None
            else None
        )

        async with self.unit_of_work() as session:
            conditions = [
                DealModel.owner_id == owner,
                DealModel.is_deleted.is_(False),
            ]
            if filters.assigned_owner is not None and filters.assigned_owner != owner_id:
                return DealPage(items=[], total=0, page=filters.page, page_size=page_size)
            if client_id is not None:
                conditions.append(DealModel.client_id == client_id)
            if filters.status is not None:
                conditions.append(DealModel.status == filters.status.value)
            if deal_type_id is not None:
                conditions.append(DealModel.deal_type_id == deal_type_id)

            count_stmt = select(func.count()).select_from(DealModel).where(*conditions)
            total = (await session.execute(count_stmt)).scalar_one()

            stmt = (
                select(DealModel)
                .where(*conditions)
                .order_by(DealModel.created_at.desc(), DealModel.id)
                .offset((filters.page - 1) * page_size)
                .limit(page_size)
            )
            result = await session.execute(stmt)
            items = [_model_to_deal(m) for m in result.scalars().all()]

        return DealPage(items=items, total=total, page=filters.page, page_size=page_size)

    async def update_deal(
        self,
        owner_id: str,
        deal_id: str,
        changes: dict[str, Any],
        *,
        session: AsyncSession | None = None,
    ) -> DealRead:
        """Apply field changes to a deal and bump its version.

        Args:
            owner_id: Caller UUID string.
            deal_id: Deal UUID string.
            changes: Column name -> new value (already validated).
            session: Optional session to join.

        Raises:
            NotFoundOrAccessDenied: If the deal is not visible to the caller.
        """
        async with self._scope(session) as s:
            model = await self._get_owned_model(s, owner_id, deal_id, for_update=True)
            for key, value in _uuid_fields(changes).items():
                setattr(model, key, value)
            model.version = (model.version or 0) + 1
            model.updated_at = _utcnow()
            await s.flush()
            await s.refresh(model)
            return _model_to_deal(model)

    async def apply_transition(
        self,
        owner_id: str,
        deal_id: str,
        expected_version: int,
        changes: dict[str, Any],
        *,
        session: AsyncSession,
    ) -> DealRead:
        """Write stage/status changes guarded by an optimistic version check.

        Raises:
            ConflictError: If the deal's version moved since it was read.
        """
        stmt = (
            update(DealModel)
            .where(
                DealModel.id == _parse_id(deal_id),
                DealModel.owner_id == _parse_id(owner_id),
                DealModel.is_deleted.is_(False),
                DealModel.version == expected_version,
            )
            .values(**changes, version=DealModel.version + 1, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            raise ConflictError(deal_id)

        model = await self._get_owned_model(session, owner_id, deal_id)
        return _model_to_deal(model)

    async def soft_delete_deal(
        self,
        owner_id: str,
        deal_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> None:
        """Flag a deal as deleted. Rows are never hard-deleted."""
        async with self._scope(session) as s:
            model = await self._get_owned_model(s, owner_id, deal_id, for_update=True)
            model.is_deleted = True
            model.version = (model.version or 0) + 1
            model.updated_at = _utcnow()
            await s.flush()

    async def pipeline(
        self, owner_id: str, deal_type: DealType, *, stage_limit: int = 20
    ) -> PipelineView:
        """Group the caller's active deals of one type by stage.

        Each stage lists at most stage_limit deals (newest first) while its
        count and total_value cover all of them. Deals sitting on a stage code
        the type no longer declares are left out of the stage columns but
        still count towards the summary.
        """
        async with self.unit_of_work() as session:
            stmt = (
                select(DealModel)
                .where(
                    DealModel.owner_id == _parse_id(owner_id),
                    DealModel.deal_type_id == uuid.UUID(deal_type.id),
                    DealModel.is_deleted.is_(False),
                    DealModel.status == DealStatus.ACTIVE.value,
                )
                .order_by(DealModel.created_at.desc())
            )
            result = await session.execute(stmt)
            deals = [_model_to_deal(m) for m in result.scalars().all()]

        by_stage: dict[str, list[DealRead]] = {code: [] for code in deal_type.stage_codes}
        for deal in deals:
            if deal.current_stage in by_stage:
                by_stage[deal.current_stage].append(deal)

        stages = []
        for stage in sorted(deal_type.pipeline_stages, key=lambda st: st.order):
            stage_deals = by_stage[stage.code]
            stages.append(
                PipelineStageView(
                    code=stage.code,
                    name=stage.name,
                    deals=stage_deals[:stage_limit],
                    count=len(stage_deals),
                    total_value=sum((d.deal_value or Decimal("0") for d in stage_deals), Decimal("0")),
                )
            )

        summary = PipelineSummary(
            total_pipeline_value=sum((d.deal_value or Decimal("0") for d in deals), Decimal("0")),
            expected_commission=sum(
                (d.agent_commission or d.commission_amount or Decimal("0") for d in deals),
                Decimal("0"),
            ),
            active_deals=len(deals),
        )
        return PipelineView(stages=stages, summary=summary)

    # ── Activities ──────────────────────────────────────────────────────────

    async def insert_activity(
        self,
        deal_id: str,
        *,
        activity_type: ActivityType,
        title: str,
        description: str | None,
        old_stage: str | None,
        new_stage: str | None,
        author_id: str,
        session: AsyncSession | None = None,
    ) -> ActivityRead:
        """Append one activity row. There is no update or delete counterpart."""
        async with self._scope(session) as s:
            model = ActivityModel(
                deal_id=_parse_id(deal_id),
                activity_type=activity_type.value,
                title=title,
                description=description,
                old_stage=old_stage,
                new_stage=new_stage,
                created_by=_parse_id(author_id),
                created_at=_utcnow(),
            )
            s.add(model)
            await s.flush()
            return _model_to_activity(model)

    async def list_activities(
        self, deal_id: str, *, limit: int = 100, session: AsyncSession | None = None
    ) -> list[ActivityRead]:
        """List a deal's activities, newest first."""
        async with self._scope(session) as s:
            stmt = (
                select(ActivityModel)
                .where(ActivityModel.deal_id == _parse_id(deal_id))
                .order_by(ActivityModel.created_at.desc())
                .limit(limit)
            )
            result = await s.execute(stmt)
            return [_model_to_activity(m) for m in result.scalars().all()]

    # ── Milestones ──────────────────────────────────────────────────────────

    async def insert_milestones(
        self,
        deal_id: str,
        rows: list[dict[str, Any]],
        *,
        author_id: str,
        session: AsyncSession,
    ) -> list[MilestoneRead]:
        """Insert a batch of milestones in the caller's transaction."""
        models = [
            MilestoneModel(
                deal_id=_parse_id(deal_id),
                milestone_type=row["milestone_type"],
                milestone_name=row["milestone_name"],
                scheduled_date=row.get("scheduled_date"),
                status=row.get("status", MilestoneStatus.PENDING.value),
                notes=row.get("notes"),
                created_by=_parse_id(author_id),
                created_at=_utcnow(),
            )
            for row in rows
        ]
        session.add_all(models)
        await session.flush()
        return [_model_to_milestone(m) for m in models]

    async def create_milestone(
        self,
        owner_id: str,
        deal_id: str,
        data: MilestoneCreate,
        *,
        session: AsyncSession | None = None,
    ) -> MilestoneRead:
        """Create one manual milestone on an owned deal."""
        async with self._scope(session) as s:
            await self._get_owned_model(s, owner_id, deal_id)
            created = await self.insert_milestones(
                deal_id,
                [
                    {
                        "milestone_type": data.milestone_type,
                        "milestone_name": data.milestone_name,
                        "scheduled_date": data.scheduled_date,
                        "notes": data.notes,
                    }
                ],
                author_id=owner_id,
                session=s,
            )
            return created[0]

    async def _get_owned_milestone(
        self, session: AsyncSession, owner_id: str, deal_id: str, milestone_id: str
    ) -> MilestoneModel:
        await self._get_owned_model(session, owner_id, deal_id)
        stmt = select(MilestoneModel).where(
            MilestoneModel.id == _parse_id(milestone_id, "milestone"),
            MilestoneModel.deal_id == _parse_id(deal_id),
        )
        result = await session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            raise NotFoundOrAccessDenied("milestone")
        return model

    async def get_milestone(
        self,
        owner_id: str,
        deal_id: str,
        milestone_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> MilestoneRead:
        async with self._scope(session) as s:
            model = await self._get_owned_milestone(s, owner_id, deal_id, milestone_id)
            return _model_to_milestone(model)

    async def update_milestone(
        self,
        owner_id: str,
        deal_id: str,
        milestone_id: str,
        changes: dict[str, Any],
        *,
        session: AsyncSession | None = None,
    ) -> MilestoneRead:
        """Apply field changes to a milestone on an owned deal."""
        async with self._scope(session) as s:
            model = await self._get_owned_milestone(s, owner_id, deal_id, milestone_id)
            for key, value in changes.items():
                if isinstance(value, MilestoneStatus):
                    value = value.value
                setattr(model, key, value)
            model.updated_at = _utcnow()
            await s.flush()
            await s.refresh(model)
            return _model_to_milestone(model)

    async def delete_milestone(
        self,
        owner_id: str,
        deal_id: str,
        milestone_id: str,
        *,
        session: AsyncSession | None = None,
    ) -> MilestoneRead:
        """Delete a milestone and return its last state."""
        async with self._scope(session) as s:
            model = await self._get_owned_milestone(s, owner_id, deal_id, milestone_id)
            snapshot = _model_to_milestone(model)
            await s.execute(delete(MilestoneModel).where(MilestoneModel.id == model.id))
            return snapshot

    async def list_milestones(
        self, owner_id: str, deal_id: str, *, session: AsyncSession | None = None
    ) -> list[MilestoneRead]:
        """List an owned deal's milestones by scheduled date."""
        async with self._scope(session) as s:
            await self._get_owned_model(s, owner_id, deal_id)
            stmt = (
                select(MilestoneModel)
                .where(MilestoneModel.deal_id == _parse_id(deal_id))
                .order_by(MilestoneModel.scheduled_date, MilestoneModel.created_at)
            )
            result = await s.execute(stmt)
            return [_model_to_milestone(m) for m in result.scalars().all()]

    # ── Milestone Trigger Markers ───────────────────────────────────────────

    async def has_trigger_marker(
        self, deal_id: str, stage_code: str, *, session: AsyncSession
    ) -> bool:
        stmt = select(MilestoneTriggerModel.id).where(
            MilestoneTriggerModel.deal_id == _parse_id(deal_id),
            MilestoneTriggerModel.stage_code == stage_code,
        )
        result = await session.execute(stmt)
        return result.first() is not None

    async def insert_trigger_marker(
        self,
        deal_id: str,
        stage_code: str,
        milestones_created: int,
        *,
        fired_by: str,
        session: AsyncSession,
    ) -> None:
        """Record that the trigger fired.

        Raises sqlalchemy IntegrityError when another writer already
        recorded the same (deal, stage) marker.
        """
        session.add(
            MilestoneTriggerModel(
                deal_id=_parse_id(deal_id),
                stage_code=stage_code,
                milestones_created=milestones_created,
                fired_by=_parse_id(fired_by),
                fired_at=_utcnow(),
            )
        )
        await session.flush()


def today() -> date:
    """Current UTC date, used for actual close dates and milestone anchors."""
    return _utcnow().date()
