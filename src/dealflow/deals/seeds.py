"""System deal types shipped with every installation.

The same rows are inserted by the initial Alembic migration; seed_deal_types()
exists for development databases created with init_db() and for tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealflow.deals.models import DealTypeModel

logger = structlog.get_logger(__name__)


SYSTEM_DEAL_TYPES: list[dict[str, Any]] = [
    {
        "type_code": "residential_sale",
        "type_name": "Residential Sale",
        "pipeline_stages": [
            {"code": "lead", "name": "Lead", "order": 1},
            {"code": "qualifying", "name": "Qualifying", "order": 2},
            {"code": "showing", "name": "Showing", "order": 3},
            {"code": "offer", "name": "Offer", "order": 4},
            {"code": "contract", "name": "Under Contract", "order": 5},
            {"code": "closing", "name": "Closing", "order": 6},
            {"code": "closed", "name": "Closed", "order": 7},
            {"code": "lost", "name": "Lost", "order": 8},
        ],
        "default_milestones": [
            {"type": "inspection", "name": "Inspection", "days_offset": 10},
            {"type": "appraisal", "name": "Appraisal", "days_offset": 14},
            {"type": "financing_approval", "name": "Financing Approval", "days_offset": 21},
            {"type": "final_walkthrough", "name": "Final Walkthrough", "days_offset": 28},
            {"type": "closing", "name": "Closing", "days_offset": 30},
        ],
        "trigger_stage": "contract",
        "won_codes": ["closed"],
        "lost_codes": ["lost"],
        "default_commission_rate": Decimal("3.00"),
    },
    {
        "type_code": "mortgage",
        "type_name": "Mortgage Loan",
        "pipeline_stages": [
            {"code": "lead", "name": "Lead", "order": 1},
            {"code": "prequalification", "name": "Prequalification", "order": 2},
            {"code": "application", "name": "Application", "order": 3},
            {"code": "processing", "name": "Processing", "order": 4},
            {"code": "underwriting", "name": "Underwriting", "order": 5},
            {"code": "approval", "name": "Approval", "order": 6},
            {"code": "closing", "name": "Closing", "order": 7},
            {"code": "funded", "name": "Funded", "order": 8},
            {"code": "lost", "name": "Lost", "order": 9},
        ],
        "default_milestones": [
            {"type": "credit_pull", "name": "Credit Pull", "days_offset": 1},
            {"type": "appraisal_ordered", "name": "Appraisal Ordered", "days_offset": 5},
            {"type": "appraisal_complete", "name": "Appraisal Complete", "days_offset": 12},
            {"type": "underwriting_complete", "name": "Underwriting Complete", "days_offset": 21},
            {"type": "clear_to_close", "name": "Clear to Close", "days_offset": 28},
            {"type": "closing_scheduled", "name": "Closing Scheduled", "days_offset": 35},
        ],
        "trigger_stage": "application",
        "won_codes": ["funded"],
        "lost_codes": ["lost"],
        "default_commission_rate": Decimal("1.00"),
    },
]


async def seed_deal_types(
    session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
) -> int:
    """Insert any system deal types that are not present yet.

    Returns:
        Number of deal types inserted.
    """
    inserted = 0
    async for session in session_factory():
        result = await session.execute(select(DealTypeModel.type_code))
        existing = set(result.scalars().all())
        for row in SYSTEM_DEAL_TYPES:
            if row["type_code"] in existing:
                continue
            session.add(DealTypeModel(**row))
            inserted += 1
        await session.commit()

    logger.info("deal_types.seeded", inserted=inserted)
    return inserted
