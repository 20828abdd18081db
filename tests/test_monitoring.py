"""Tests for deal pipeline metrics and logging configuration."""

from __future__ import annotations

from unittest.mock import patch

import pytest
import structlog
from prometheus_client import REGISTRY

from src.dealflow.config import Environment, Settings
from src.dealflow.core.logging import configure_structlog
from src.dealflow.core.monitoring import get_metrics_payload


class TestMetrics:
    """Transition counters are exported in Prometheus format."""

    @pytest.mark.asyncio
    async def test_transition_counted(self, service, deal_factory, owner_id) -> None:
        labels = {"deal_type": "residential_sale", "status": "closed_won"}
        before = REGISTRY.get_sample_value("deal_stage_transitions_total", labels) or 0.0

        deal = await deal_factory()
        await service.change_stage(deal.id, "closed", None, owner_id)

        after = REGISTRY.get_sample_value("deal_stage_transitions_total", labels)
        assert after == before + 1

    @pytest.mark.asyncio
    async def test_milestones_counted(self, service, deal_factory, owner_id) -> None:
        labels = {"deal_type": "residential_sale"}
        before = REGISTRY.get_sample_value("deal_milestones_generated_total", labels) or 0.0

        deal = await deal_factory()
        await service.change_stage(deal.id, "contract", None, owner_id)

        after = REGISTRY.get_sample_value("deal_milestones_generated_total", labels)
        assert after == before + 5

    def test_payload_lists_deal_metrics(self) -> None:
        payload = get_metrics_payload()
        assert b"deal_stage_transitions_total" in payload
        assert b"deal_activity_log_failures_total" in payload


class TestConfigureStructlog:
    """Renderer selection follows the environment."""

    def teardown_method(self) -> None:
        structlog.reset_defaults()

    @pytest.mark.parametrize(
        ("environment", "renderer"),
        [
            (Environment.production, structlog.processors.JSONRenderer),
            (Environment.development, structlog.dev.ConsoleRenderer),
        ],
    )
    def test_renderer(self, environment, renderer) -> None:
        settings = Settings(ENVIRONMENT=environment, LOG_LEVEL="WARNING")
        with patch("src.dealflow.core.logging.get_settings", return_value=settings):
            configure_structlog()
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], renderer)
