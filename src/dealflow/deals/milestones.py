"""Milestone generation from deal type templates.

When a deal reaches its type's trigger stage, every milestone template is
expanded into a pending milestone scheduled relative to an anchor date.
Generation is at-most-once per (deal, trigger stage): the batch is written
together with a MilestoneTrigger marker whose unique constraint rejects a
second batch even when two writers race.
"""

from __future__ import annotations

from datetime import date, timedelta

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealflow.core.monitoring import milestones_generated_total
from src.dealflow.deals.activity import ActivityLog
from src.dealflow.deals.repository import DealRepository, today
from src.dealflow.deals.schemas import (
    ActivityType,
    DealRead,
    DealType,
    MilestoneStatus,
    MilestoneTemplate,
)

logger = structlog.get_logger(__name__)


def schedule(templates: list[MilestoneTemplate], anchor: date) -> list[dict]:
    """Expand templates into milestone rows dated anchor + days_offset."""
    return [
        {
            "milestone_type": t.type,
            "milestone_name": t.name,
            "scheduled_date": anchor + timedelta(days=t.days_offset),
            "status": MilestoneStatus.PENDING.value,
        }
        for t in templates
    ]


class MilestoneGenerator:
    """Creates a deal's default milestones once per trigger event.

    Args:
        repository: DealRepository for milestone and marker inserts.
        activity_log: ActivityLog for the best-effort summary entry.
    """

    def __init__(self, repository: DealRepository, activity_log: ActivityLog) -> None:
        self._repo = repository
        self._activity = activity_log

    async def generate(
        self,
        session: AsyncSession,
        deal: DealRead,
        deal_type: DealType,
        caller_id: str,
        anchor_date: date | None = None,
    ) -> int:
        """Create the milestone batch for a deal's trigger stage.

        Runs inside a savepoint of the caller's session: an error rolls back
        the batch and the marker, propagates, and leaves the enclosing
        transaction usable.

        Args:
            session: Session of the enclosing stage transition.
            deal: The deal as updated by the transition.
            deal_type: The deal's type (templates and trigger stage).
            caller_id: User performing the transition.
            anchor_date: Scheduling anchor; defaults to the deal's
                expected_close_date, else today.

        Returns:
            Number of milestones created; 0 when the type has no templates or
            the batch was already generated.
        """
        templates = deal_type.default_milestones
        if not templates or deal_type.trigger_stage is None:
            return 0

        stage = deal_type.trigger_stage
        anchor = anchor_date or deal.expected_close_date or today()
        rows = schedule(templates, anchor)

        try:
            async with session.begin_nested():
                if await self._repo.has_trigger_marker(deal.id, stage, session=session):
                    logger.debug(
                        "milestones.already_generated", deal_id=deal.id, stage=stage
                    )
                    return 0
                created = await self._repo.insert_milestones(
                    deal.id, rows, author_id=caller_id, session=session
                )
                await self._repo.insert_trigger_marker(
                    deal.id,
                    stage,
                    len(created),
                    fired_by=caller_id,
                    session=session,
                )
        except IntegrityError:
            if await self._repo.has_trigger_marker(deal.id, stage, session=session):
                logger.info("milestones.generation_raced", deal_id=deal.id, stage=stage)
                return 0
            raise

        milestones_generated_total.labels(deal_type=deal_type.type_code).inc(len(created))
        logger.info(
            "milestones.generated",
            deal_id=deal.id,
            stage=stage,
            count=len(created),
            anchor=anchor.isoformat(),
        )

        await self._activity.append_best_effort(
            deal.id,
            ActivityType.OTHER,
            f"Created {len(created)} milestones",
            description="Milestones: " + ", ".join(m.milestone_name for m in created),
            author_id=caller_id,
            session=session,
        )
        return len(created)
