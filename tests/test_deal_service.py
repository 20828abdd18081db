"""Tests for DealService -- the external deal pipeline interface.

Tests cover:
- create_deal: initial stage, commission, default rate, derived names, audit entry
- update_deal: commission recompute, closed-deal freeze, lost_reason rules
- delete_deal: soft delete hides the deal
- create_activity / list_activities
- Milestone CRUD with audit entries
- get_pipeline and get_deal_types
"""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

import pytest

from src.dealflow.deals.errors import NotFoundOrAccessDenied, ValidationError
from src.dealflow.deals.models import DealTypeModel
from src.dealflow.deals.repository import today
from src.dealflow.deals.schemas import (
    ActivityCreate,
    ActivityType,
    DealCreate,
    DealFilter,
    DealStatus,
    DealUpdate,
    MilestoneCreate,
    MilestoneStatus,
    MilestoneUpdate,
)
from src.dealflow.deals.service import derive_deal_name

LOST_REASON = "Client relocated out of state"


# ── Deal names ──────────────────────────────────────────────────────────────


class TestDeriveDealName:
    def test_first_part_of_address(self) -> None:
        assert derive_deal_name({"property_address": "42 Oak Ave, Austin, TX"}) == "42 Oak Ave"

    def test_loan_amount(self) -> None:
        assert derive_deal_name({"loan_amount": 350000}) == "$350,000 Loan"

    def test_fallback(self) -> None:
        assert derive_deal_name({}) == "New Deal"


# ── create_deal ─────────────────────────────────────────────────────────────


class TestCreateDeal:
    """Tests for DealService.create_deal."""

    @pytest.mark.asyncio
    async def test_starts_at_initial_stage_with_commission(
        self, service, deal_factory
    ) -> None:
        deal = await deal_factory()

        assert deal.current_stage == "lead"
        assert deal.status == DealStatus.ACTIVE
        assert deal.commission_amount == Decimal("6000.00")
        assert deal.agent_commission == Decimal("3000.00")
        assert deal.version == 1

    @pytest.mark.asyncio
    async def test_default_commission_rate_from_type(
        self, service, residential, owner_id
    ) -> None:
        deal = await service.create_deal(
            DealCreate(
                deal_type_id=residential.id,
                client_id=str(uuid.uuid4()),
                deal_value=100000,
                deal_data={"property_address": "9 Elm St, Dayton"},
            ),
            owner_id,
        )
        assert deal.commission_rate == Decimal("3.00")
        assert deal.commission_amount == Decimal("3000.00")
        assert deal.deal_name == "9 Elm St"

    @pytest.mark.asyncio
    async def test_logs_created_activity(self, service, deal_factory, owner_id) -> None:
        deal = await deal_factory(deal_name="Lakeview Condo")
        activities = await service.list_activities(deal.id, owner_id)
        assert [(a.activity_type, a.title) for a in activities] == [
            (ActivityType.OTHER, "Deal Created")
        ]
        assert activities[0].description == "Created deal: Lakeview Condo"

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, service, owner_id) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.create_deal(
                DealCreate(deal_type_id=str(uuid.uuid4()), client_id=str(uuid.uuid4())),
                owner_id,
            )
        assert exc_info.value.field == "deal_type_id"

    @pytest.mark.asyncio
    async def test_malformed_client_rejected(self, service, residential, owner_id) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.create_deal(
                DealCreate(deal_type_id=residential.id, client_id="nobody"), owner_id
            )
        assert exc_info.value.field == "client_id"


# ── update_deal / delete_deal ───────────────────────────────────────────────


class TestUpdateDeal:
    """Tests for DealService.update_deal."""

    @pytest.mark.asyncio
    async def test_partial_update_recomputes_commission(
        self, service, deal_factory, owner_id
    ) -> None:
        deal = await deal_factory()
        updated = await service.update_deal(
            deal.id, DealUpdate(deal_value=300000), owner_id
        )
        assert updated.commission_rate == Decimal("3.00")
        assert updated.commission_amount == Decimal("9000.00")
        assert updated.agent_commission == Decimal("4500.00")

    @pytest.mark.asyncio
    async def test_split_change_recomputes_agent_commission(
        self, service, deal_factory, owner_id
    ) -> None:
        deal = await deal_factory()
        updated = await service.update_deal(
            deal.id, DealUpdate(commission_split_percent=70), owner_id
        )
        assert updated.agent_commission == Decimal("4200.00")

    @pytest.mark.asyncio
    async def test_logs_field_update(self, service, deal_factory, owner_id) -> None:
        deal = await deal_factory()
        await service.update_deal(
            deal.id, DealUpdate(notes="Prefers email", referral_source="Open house"),
            owner_id,
        )
        activities = await service.list_activities(deal.id, owner_id)
        update = next(a for a in activities if a.activity_type == ActivityType.FIELD_UPDATE)
        assert update.title == "Deal Updated"
        assert update.description == "Updated fields: notes, referral_source"

    @pytest.mark.asyncio
    async def test_closed_deal_financials_frozen(
        self, service, deal_factory, owner_id
    ) -> None:
        deal = await deal_factory()
        await service.change_stage(deal.id, "closed", None, owner_id)

        with pytest.raises(ValidationError) as exc_info:
            await service.update_deal(deal.id, DealUpdate(deal_value=1), owner_id)
        assert exc_info.value.field == "deal_value"

        updated = await service.update_deal(
            deal.id, DealUpdate(notes="Keys handed over"), owner_id
        )
        assert updated.notes == "Keys handed over"
        assert updated.deal_value == Decimal("200000.00")

    @pytest.mark.asyncio
    async def test_lost_reason_only_on_lost_deals(
        self, service, deal_factory, owner_id
    ) -> None:
        deal = await deal_factory()
        with pytest.raises(ValidationError):
            await service.update_deal(
                deal.id, DealUpdate(lost_reason=LOST_REASON), owner_id
            )

        await service.mark_lost(deal.id, LOST_REASON, owner_id)
        with pytest.raises(ValidationError):
            await service.update_deal(deal.id, DealUpdate(lost_reason="short"), owner_id)

        updated = await service.update_deal(
            deal.id, DealUpdate(lost_reason="Financing fell through at underwriting"),
            owner_id,
        )
        assert updated.lost_reason == "Financing fell through at underwriting"

    @pytest.mark.asyncio
    async def test_foreign_owner_denied(
        self, service, deal_factory, other_owner_id
    ) -> None:
        deal = await deal_factory()
        with pytest.raises(NotFoundOrAccessDenied):
            await service.update_deal(deal.id, DealUpdate(notes="x"), other_owner_id)

    @pytest.mark.asyncio
    async def test_empty_update_returns_deal(
        self, service, deal_factory, owner_id
    ) -> None:
        deal = await deal_factory()
        same = await service.update_deal(deal.id, DealUpdate(), owner_id)
        assert same.version == deal.version


class TestDeleteDeal:
    @pytest.mark.asyncio
    async def test_soft_delete_hides_deal(self, service, deal_factory, owner_id) -> None:
        deal = await deal_factory()
        await service.delete_deal(deal.id, owner_id)

        with pytest.raises(NotFoundOrAccessDenied):
            await service.get_deal(deal.id, owner_id)
        page = await service.list_deals(DealFilter(), owner_id)
        assert page.total == 0

    @pytest.mark.asyncio
    async def test_foreign_owner_cannot_delete(
        self, service, deal_factory, owner_id, other_owner_id
    ) -> None:
        deal = await deal_factory()
        with pytest.raises(NotFoundOrAccessDenied):
            await service.delete_deal(deal.id, other_owner_id)
        assert (await service.get_deal(deal.id, owner_id)).id == deal.id


class TestMarkLost:
    @pytest.mark.asyncio
    async def test_type_without_lost_stage(
        self, service, session_factory, owner_id
    ) -> None:
        type_id = uuid.uuid4()
        async for session in session_factory():
            session.add(
                DealTypeModel(
                    id=type_id,
                    type_code="referral",
                    type_name="Referral",
                    pipeline_stages=[
                        {"code": "new", "name": "New", "order": 0},
                        {"code": "paid", "name": "Paid", "order": 1},
                    ],
                    default_milestones=[],
                    won_codes=["paid"],
                    lost_codes=[],
                )
            )
            await session.commit()

        deal = await service.create_deal(
            DealCreate(deal_type_id=str(type_id), client_id=str(uuid.uuid4())),
            owner_id,
        )
        assert deal.current_stage == "new"
        with pytest.raises(ValidationError):
            await service.mark_lost(deal.id, LOST_REASON, owner_id)


# ── Activities ──────────────────────────────────────────────────────────────


class TestActivities:
    """Tests for create_activity and list_activities."""

    @pytest.mark.asyncio
    async def test_create_note(self, service, deal_factory, owner_id) -> None:
        deal = await deal_factory()
        note = await service.create_activity(
            deal.id,
            ActivityCreate(
                activity_type=ActivityType.CALL,
                title="Intro call",
                description="Discussed budget",
            ),
            owner_id,
        )
        assert note.activity_type == ActivityType.CALL
        assert note.created_by == owner_id

        activities = await service.list_activities(deal.id, owner_id)
        assert note.id in [a.id for a in activities]

    @pytest.mark.asyncio
    async def test_stage_change_rejected(self, service, deal_factory, owner_id) -> None:
        deal = await deal_factory()
        with pytest.raises(ValidationError):
            await service.create_activity(
                deal.id,
                ActivityCreate(activity_type=ActivityType.STAGE_CHANGE, title="Moved"),
                owner_id,
            )

    @pytest.mark.asyncio
    async def test_foreign_owner_denied(
        self, service, deal_factory, other_owner_id
    ) -> None:
        deal = await deal_factory()
        with pytest.raises(NotFoundOrAccessDenied):
            await service.create_activity(
                deal.id,
                ActivityCreate(activity_type=ActivityType.NOTE, title="Sneaky"),
                other_owner_id,
            )
        with pytest.raises(NotFoundOrAccessDenied):
            await service.list_activities(deal.id, other_owner_id)


# ── Milestones ──────────────────────────────────────────────────────────────


class TestMilestones:
    """Manual milestone CRUD."""

    @pytest.mark.asyncio
    async def test_create_custom_milestone(
        self, service, deal_factory, owner_id
    ) -> None:
        deal = await deal_factory()
        milestone = await service.create_milestone(
            deal.id,
            MilestoneCreate(milestone_name="HOA docs", scheduled_date=date(2026, 4, 2)),
            owner_id,
        )
        assert milestone.milestone_type == "custom"
        assert milestone.status == MilestoneStatus.PENDING

        titles = [a.title for a in await service.list_activities(deal.id, owner_id)]
        assert "Milestone Added" in titles

    @pytest.mark.asyncio
    async def test_template_type_allowed(
        self, service, deal_factory, mortgage, owner_id
    ) -> None:
        deal = await deal_factory(mortgage)
        milestone = await service.create_milestone(
            deal.id,
            MilestoneCreate(milestone_name="Pull credit", milestone_type="credit_pull"),
            owner_id,
        )
        assert milestone.milestone_type == "credit_pull"

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, service, deal_factory, owner_id) -> None:
        deal = await deal_factory()
        with pytest.raises(ValidationError) as exc_info:
            await service.create_milestone(
                deal.id,
                MilestoneCreate(milestone_name="Party", milestone_type="celebration"),
                owner_id,
            )
        assert exc_info.value.field == "milestone_type"

    @pytest.mark.asyncio
    async def test_complete_stamps_today_and_logs(
        self, service, deal_factory, owner_id
    ) -> None:
        deal = await deal_factory()
        milestone = await service.create_milestone(
            deal.id, MilestoneCreate(milestone_name="Survey", milestone_type="survey"), owner_id
        )

        done = await service.update_milestone(
            deal.id,
            milestone.id,
            MilestoneUpdate(status=MilestoneStatus.COMPLETED),
            owner_id,
        )

        assert done.status == MilestoneStatus.COMPLETED
        assert done.completed_date == today()
        activities = await service.list_activities(deal.id, owner_id)
        completed = [
            a for a in activities if a.activity_type == ActivityType.MILESTONE_COMPLETE
        ]
        assert len(completed) == 1
        assert completed[0].description == "Completed milestone: Survey"

    @pytest.mark.asyncio
    async def test_reschedule(self, service, deal_factory, owner_id) -> None:
        deal = await deal_factory()
        milestone = await service.create_milestone(
            deal.id, MilestoneCreate(milestone_name="Walkthrough"), owner_id
        )
        moved = await service.update_milestone(
            deal.id,
            milestone.id,
            MilestoneUpdate(scheduled_date=date(2026, 6, 1), milestone_name="Final walkthrough"),
            owner_id,
        )
        assert moved.scheduled_date == date(2026, 6, 1)
        assert moved.milestone_name == "Final walkthrough"

    @pytest.mark.asyncio
    async def test_delete_logs_activity(self, service, deal_factory, owner_id) -> None:
        deal = await deal_factory()
        milestone = await service.create_milestone(
            deal.id, MilestoneCreate(milestone_name="Appraisal"), owner_id
        )

        await service.delete_milestone(deal.id, milestone.id, owner_id)

        assert await service.list_milestones(deal.id, owner_id) == []
        activities = await service.list_activities(deal.id, owner_id)
        assert "Deleted milestone: Appraisal" in [a.description for a in activities]

    @pytest.mark.asyncio
    async def test_milestone_of_other_deal_denied(
        self, service, deal_factory, owner_id
    ) -> None:
        first = await deal_factory()
        second = await deal_factory()
        milestone = await service.create_milestone(
            first.id, MilestoneCreate(milestone_name="Inspection"), owner_id
        )
        with pytest.raises(NotFoundOrAccessDenied):
            await service.update_milestone(
                second.id, milestone.id, MilestoneUpdate(notes="x"), owner_id
            )

    @pytest.mark.asyncio
    async def test_foreign_owner_denied(
        self, service, deal_factory, owner_id, other_owner_id
    ) -> None:
        deal = await deal_factory()
        milestone = await service.create_milestone(
            deal.id, MilestoneCreate(milestone_name="Inspection"), owner_id
        )
        with pytest.raises(NotFoundOrAccessDenied):
            await service.delete_milestone(deal.id, milestone.id, other_owner_id)


# ── Pipeline and deal types ─────────────────────────────────────────────────


class TestPipelineAndTypes:
    @pytest.mark.asyncio
    async def test_pipeline_defaults_to_latest_deal_type(
        self, service, deal_factory, mortgage, owner_id
    ) -> None:
        await deal_factory()
        await deal_factory(mortgage)

        view = await service.get_pipeline(owner_id)

        assert [s.code for s in view.stages] == mortgage.stage_codes
        assert view.summary.active_deals == 1

    @pytest.mark.asyncio
    async def test_pipeline_empty_without_deals(self, service, owner_id) -> None:
        view = await service.get_pipeline(owner_id)
        assert view.stages == []
        assert view.summary.active_deals == 0

    @pytest.mark.asyncio
    async def test_get_deal_types(self, service) -> None:
        codes = {t.type_code for t in await service.get_deal_types()}
        assert codes == {"residential_sale", "mortgage"}
