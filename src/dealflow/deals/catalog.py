"""Read-only lookup of deal type configuration.

Deal types are configuration data: loaded from the deal_types table,
validated into immutable DealType schemas, and cached for the lifetime of
the catalog. The catalog exposes no mutation operations.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealflow.deals.errors import NotFoundError
from src.dealflow.deals.models import DealTypeModel
from src.dealflow.deals.schemas import DealType, MilestoneTemplate, PipelineStage

logger = structlog.get_logger(__name__)


def _model_to_deal_type(model: DealTypeModel) -> DealType:
    """Convert DealTypeModel to the DealType schema."""
    return DealType(
        id=str(model.id),
        type_code=model.type_code,
        type_name=model.type_name,
        pipeline_stages=[PipelineStage(**s) for s in (model.pipeline_stages or [])],
        default_milestones=[
            MilestoneTemplate(**m) for m in (model.default_milestones or [])
        ],
        trigger_stage=model.trigger_stage,
        won_codes=list(model.won_codes or []),
        lost_codes=list(model.lost_codes or []),
        default_commission_rate=model.default_commission_rate,
        is_active=model.is_active,
    )


class DealTypeCatalog:
    """Cached, read-only access to active deal types.

    Stage configuration is cached per type; get() still re-checks the active
    flag so a deactivated type stops resolving.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory
        self._by_id: dict[str, DealType] = {}

    async def get(self, type_id: str) -> DealType:
        """Get an active deal type by ID.

        Raises:
            NotFoundError: If the type is missing or inactive.
        """
        try:
            key = uuid.UUID(type_id)
        except ValueError:
            raise NotFoundError(f"Deal type not found: {type_id}") from None

        cached = self._by_id.get(type_id)
        if cached is not None:
            if await self._is_active(key):
                return cached
            del self._by_id[type_id]
            logger.info("deal_type.deactivated", type_code=cached.type_code)
            raise NotFoundError(f"Deal type not found: {type_id}")

        async for session in self._session_factory():
            stmt = select(DealTypeModel).where(
                DealTypeModel.id == key,
                DealTypeModel.is_active.is_(True),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise NotFoundError(f"Deal type not found: {type_id}")
            deal_type = _model_to_deal_type(model)

        self._by_id[deal_type.id] = deal_type
        logger.debug("deal_type.loaded", type_code=deal_type.type_code)
        return deal_type

    async def get_by_code(self, type_code: str) -> DealType:
        """Get an active deal type by its type code."""
        for deal_type in self._by_id.values():
            if deal_type.type_code == type_code:
                return await self.get(deal_type.id)

        async for session in self._session_factory():
            stmt = select(DealTypeModel).where(
                DealTypeModel.type_code == type_code,
                DealTypeModel.is_active.is_(True),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise NotFoundError(f"Deal type not found: {type_code}")
            deal_type = _model_to_deal_type(model)

        self._by_id[deal_type.id] = deal_type
        return deal_type

    async def list_active(self) -> list[DealType]:
        """List all active deal types ordered by name."""
        async for session in self._session_factory():
            stmt = (
                select(DealTypeModel)
                .where(DealTypeModel.is_active.is_(True))
                .order_by(DealTypeModel.type_name)
            )
            result = await session.execute(stmt)
            types = [_model_to_deal_type(m) for m in result.scalars().all()]

        for deal_type in types:
            self._by_id[deal_type.id] = deal_type
        return types

    async def _is_active(self, key: uuid.UUID) -> bool:
        async for session in self._session_factory():
            stmt = select(DealTypeModel.is_active).where(DealTypeModel.id == key)
            active = (await session.execute(stmt)).scalar_one_or_none()
        return bool(active)
