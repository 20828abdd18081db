"""Append-only audit journal for deals.

Two write modes:
- append(): strict. Used for entries that must commit with the state change
  they describe (stage changes). Failures propagate and roll back the caller.
- append_best_effort(): fire-and-forget. Runs in a savepoint of the caller's
  session, or on its own session under a bounded timeout; failures are logged
  and counted but never raised.

There is no update or delete operation.
"""

from __future__ import annotations

import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealflow.core.monitoring import activity_log_failures_total
from src.dealflow.deals.errors import ValidationError
from src.dealflow.deals.repository import DealRepository
from src.dealflow.deals.schemas import ActivityRead, ActivityType

logger = structlog.get_logger(__name__)


def _check_stage_change(
    activity_type: ActivityType, old_stage: str | None, new_stage: str | None
) -> None:
    if activity_type != ActivityType.STAGE_CHANGE:
        return
    if not old_stage or not new_stage:
        raise ValidationError(
            "stage_change activities require old_stage and new_stage",
            field="new_stage",
        )
    if old_stage == new_stage:
        raise ValidationError(
            "stage_change activities require old_stage != new_stage",
            field="new_stage",
        )


class ActivityLog:
    """Writes and reads a deal's activity history.

    Args:
        repository: DealRepository used for inserts and reads.
        timeout_seconds: Upper bound for a best-effort write.
    """

    def __init__(self, repository: DealRepository, timeout_seconds: float = 5.0) -> None:
        self._repo = repository
        self._timeout = timeout_seconds

    async def append(
        self,
        deal_id: str,
        activity_type: ActivityType,
        title: str,
        *,
        author_id: str,
        description: str | None = None,
        old_stage: str | None = None,
        new_stage: str | None = None,
        session: AsyncSession | None = None,
    ) -> ActivityRead:
        """Append an activity, raising on failure.

        Args:
            deal_id: Deal UUID string.
            activity_type: Kind of entry.
            title: Short headline.
            author_id: Caller UUID string.
            description: Optional longer text.
            old_stage: Previous stage (stage_change only).
            new_stage: New stage (stage_change only).
            session: Session of the enclosing unit of work, if any.

        Returns:
            The persisted ActivityRead.

        Raises:
            ValidationError: If a stage_change entry lacks distinct stages.
            PersistenceError: If the write fails outside a caller's unit of work.
        """
        _check_stage_change(activity_type, old_stage, new_stage)
        return await self._repo.insert_activity(
            deal_id,
            activity_type=activity_type,
            title=title,
            description=description,
            old_stage=old_stage,
            new_stage=new_stage,
            author_id=author_id,
            session=session,
        )

    async def append_best_effort(
        self,
        deal_id: str,
        activity_type: ActivityType,
        title: str,
        *,
        author_id: str,
        description: str | None = None,
        old_stage: str | None = None,
        new_stage: str | None = None,
        session: AsyncSession | None = None,
    ) -> ActivityRead | None:
        """Append an activity without ever raising.

        When joined to a session the insert runs in a savepoint, so a failed
        write leaves the caller's transaction usable. The timeout applies only
        to writes on a session of their own; a statement in flight on the
        caller's connection is never cancelled.

        Returns:
            The persisted ActivityRead, or None if the write failed or timed out.
        """
        write = self._append_isolated(
            deal_id,
            activity_type,
            title,
            author_id=author_id,
            description=description,
            old_stage=old_stage,
            new_stage=new_stage,
            session=session,
        )
        try:
            if session is not None:
                return await write
            return await asyncio.wait_for(write, timeout=self._timeout)
        except Exception as exc:
            activity_log_failures_total.labels(activity_type=activity_type.value).inc()
            logger.warning(
                "activity.best_effort_write_failed",
                deal_id=deal_id,
                activity_type=activity_type.value,
                error=str(exc) or type(exc).__name__,
                exc_info=True,
            )
            return None

    async def _append_isolated(
        self,
        deal_id: str,
        activity_type: ActivityType,
        title: str,
        *,
        author_id: str,
        description: str | None,
        old_stage: str | None,
        new_stage: str | None,
        session: AsyncSession | None,
    ) -> ActivityRead:
        if session is None:
            return await self.append(
                deal_id,
                activity_type,
                title,
                author_id=author_id,
                description=description,
                old_stage=old_stage,
                new_stage=new_stage,
            )
        async with session.begin_nested():
            return await self.append(
                deal_id,
                activity_type,
                title,
                author_id=author_id,
                description=description,
                old_stage=old_stage,
                new_stage=new_stage,
                session=session,
            )

    async def list_for_deal(
        self, deal_id: str, limit: int = 100, *, session: AsyncSession | None = None
    ) -> list[ActivityRead]:
        """List a deal's activities, newest first."""
        return await self._repo.list_activities(deal_id, limit=limit, session=session)
