"""Stage transition engine for deals.

Moves a deal to a new stage of its type's pipeline and applies the side
effects in a single unit of work:

1. Validate the target stage against the deal type
2. Derive status, close timestamps and lost reason from the stage kind
3. Write the deal (version-checked) and one stage_change activity
4. On the trigger stage, generate milestones inside a savepoint

Same-deal transitions are serialized by an in-process lock per deal and, across
processes, by the optimistic version check. A lost race is retried from a
fresh read.
"""

from __future__ import annotations

import asyncio
import weakref
from datetime import datetime, timezone
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.dealflow.config import Settings, get_settings
from src.dealflow.core.monitoring import (
    milestone_generation_failures_total,
    stage_transitions_total,
    transition_conflicts_total,
)
from src.dealflow.deals.activity import ActivityLog
from src.dealflow.deals.catalog import DealTypeCatalog
from src.dealflow.deals.errors import ConflictError, InvalidStageError, ValidationError
from src.dealflow.deals.milestones import MilestoneGenerator
from src.dealflow.deals.repository import DealRepository, today
from src.dealflow.deals.schemas import (
    ActivityType,
    DealRead,
    DealStatus,
    DealType,
    StageKind,
    TransitionResult,
)

logger = structlog.get_logger(__name__)


class StageTransitionEngine:
    """Applies stage changes to deals.

    Args:
        repository: DealRepository (unit of work and version-checked writes).
        catalog: DealTypeCatalog for stage configuration.
        milestone_generator: MilestoneGenerator for trigger-stage automation.
        activity_log: ActivityLog for stage_change entries.
        settings: Optional settings override (defaults to get_settings()).
    """

    def __init__(
        self,
        repository: DealRepository,
        catalog: DealTypeCatalog,
        milestone_generator: MilestoneGenerator,
        activity_log: ActivityLog,
        settings: Settings | None = None,
    ) -> None:
        self._repo = repository
        self._catalog = catalog
        self._milestones = milestone_generator
        self._activity = activity_log
        self._settings = settings or get_settings()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, deal_id: str) -> asyncio.Lock:
        lock = self._locks.get(deal_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[deal_id] = lock
        return lock

    async def transition(
        self,
        deal_id: str,
        new_stage: str,
        caller_id: str,
        lost_reason: str | None = None,
    ) -> TransitionResult:
        """Move a deal to new_stage.

        Args:
            deal_id: Deal UUID string.
            new_stage: Target stage code.
            caller_id: Owner performing the change.
            lost_reason: Required (min length) when new_stage is a lost stage.

        Returns:
            TransitionResult with the updated deal and milestone count.

        Raises:
            NotFoundOrAccessDenied: Deal missing or not owned by caller.
            InvalidStageError: new_stage is not a stage of the deal's type.
            ValidationError: Lost reason missing/short, or backwards move
                while stage order is enforced.
            ConflictError: Concurrent writers kept winning for every attempt.
        """
        async with self._lock_for(deal_id):
            retrying = AsyncRetrying(
                stop=stop_after_attempt(self._settings.TRANSITION_MAX_ATTEMPTS),
                wait=wait_exponential(multiplier=0.05, max=1),
                retry=retry_if_exception_type(ConflictError),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    result = await self._attempt(deal_id, new_stage, caller_id, lost_reason)
        return result

    async def mark_lost(
        self, deal_id: str, lost_reason: str, caller_id: str
    ) -> TransitionResult:
        """Transition a deal to its type's primary lost stage.

        Raises:
            ValidationError: If the deal type declares no lost stage.
        """
        deal = await self._repo.get_deal(caller_id, deal_id)
        deal_type = await self._catalog.get(deal.deal_type_id)
        lost_code = deal_type.primary_lost_code
        if lost_code is None:
            raise ValidationError(
                f"Deal type {deal_type.type_code} has no lost stage", field="new_stage"
            )
        return await self.transition(deal_id, lost_code, caller_id, lost_reason=lost_reason)

    # ── Internals ───────────────────────────────────────────────────────────

    async def _attempt(
        self,
        deal_id: str,
        new_stage: str,
        caller_id: str,
        lost_reason: str | None,
    ) -> TransitionResult:
        milestones_created = 0
        milestone_error: str | None = None

        async with self._repo.unit_of_work() as session:
            deal = await self._repo.get_deal(
                caller_id, deal_id, for_update=True, session=session
            )
            deal_type = await self._catalog.get(deal.deal_type_id)

            if not deal_type.has_stage(new_stage):
                raise InvalidStageError(new_stage, deal_type.stage_codes)

            if deal_type.classify(new_stage) == StageKind.LOST:
                self._require_lost_reason(lost_reason)

            if new_stage == deal.current_stage:
                logger.debug("deals.stage_unchanged", deal_id=deal_id, stage=new_stage)
                return TransitionResult(deal=deal)

            changes = self._plan_changes(deal, deal_type, new_stage, lost_reason)

            try:
                updated = await self._repo.apply_transition(
                    caller_id, deal_id, deal.version, changes, session=session
                )
            except ConflictError:
                transition_conflicts_total.inc()
                logger.warning(
                    "deals.transition_conflict",
                    deal_id=deal_id,
                    expected_version=deal.version,
                )
                raise

            await self._activity.append(
                deal_id,
                ActivityType.STAGE_CHANGE,
                f"Moved to {new_stage}",
                old_stage=deal.current_stage,
                new_stage=new_stage,
                author_id=caller_id,
                session=session,
            )

            if deal_type.is_trigger(new_stage):
                try:
                    milestones_created = await self._milestones.generate(
                        session, updated, deal_type, caller_id
                    )
                except Exception as exc:
                    milestone_error = f"Milestone generation failed: {exc}"
                    milestone_generation_failures_total.labels(
                        deal_type=deal_type.type_code
                    ).inc()
                    logger.error(
                        "deals.milestone_generation_failed",
                        deal_id=deal_id,
                        stage=new_stage,
                        error=str(exc),
                        exc_info=True,
                    )

        stage_transitions_total.labels(
            deal_type=deal_type.type_code, status=updated.status.value
        ).inc()
        logger.info(
            "deals.stage_changed",
            deal_id=deal_id,
            owner_id=caller_id,
            old_stage=deal.current_stage,
            new_stage=new_stage,
            status=updated.status.value,
            milestones_created=milestones_created,
        )
        return TransitionResult(
            deal=updated,
            milestones_created=milestones_created,
            milestone_error=milestone_error,
        )

    def _plan_changes(
        self,
        deal: DealRead,
        deal_type: DealType,
        new_stage: str,
        lost_reason: str | None,
    ) -> dict[str, Any]:
        """Derive the column changes implied by moving deal to new_stage."""
        kind = deal_type.classify(new_stage)
        current_kind = deal_type.classify(deal.current_stage)
        now = datetime.now(timezone.utc)
        changes: dict[str, Any] = {"current_stage": new_stage}

        if kind == StageKind.WON:
            changes["status"] = DealStatus.CLOSED_WON.value
            changes["closed_at"] = now
            changes["lost_reason"] = None
            if deal.actual_close_date is None:
                changes["actual_close_date"] = today()

        elif kind == StageKind.LOST:
            reason = self._require_lost_reason(lost_reason)
            changes["status"] = DealStatus.CLOSED_LOST.value
            changes["closed_at"] = now
            changes["lost_reason"] = reason
            if current_kind == StageKind.OPEN:
                changes["last_active_stage"] = deal.current_stage

        else:
            if (
                self._settings.ENFORCE_STAGE_ORDER
                and current_kind == StageKind.OPEN
                and deal_type.stage_order(new_stage) < deal_type.stage_order(deal.current_stage)
            ):
                raise ValidationError(
                    f"Cannot move deal back from {deal.current_stage} to {new_stage}",
                    field="new_stage",
                )
            changes["status"] = DealStatus.ACTIVE.value
            if current_kind != StageKind.OPEN:
                changes["closed_at"] = None
                changes["lost_reason"] = None

        return changes

    def _require_lost_reason(self, lost_reason: str | None) -> str:
        """Return the stripped lost reason, rejecting one below the minimum length."""
        reason = (lost_reason or "").strip()
        min_length = self._settings.LOST_REASON_MIN_LENGTH
        if len(reason) < min_length:
            raise ValidationError(
                f"Lost reason required (minimum {min_length} characters)",
                field="lost_reason",
            )
        return reason
