"""Prometheus metrics for the deal pipeline.

Provides counters for stage transitions and for the best-effort side effects
(milestone generation, audit summaries) whose failures never reach the
caller and therefore must be visible to monitoring instead.
"""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter, generate_latest

# ── Transition Metrics ───────────────────────────────────────────────────────

stage_transitions_total = Counter(
    "deal_stage_transitions_total",
    "Total committed deal stage transitions",
    ["deal_type", "status"],
)

transition_conflicts_total = Counter(
    "deal_transition_conflicts_total",
    "Concurrent transition collisions detected by the version check",
)

# ── Best-Effort Side Effects ─────────────────────────────────────────────────

milestones_generated_total = Counter(
    "deal_milestones_generated_total",
    "Milestones created by trigger-stage automation",
    ["deal_type"],
)

milestone_generation_failures_total = Counter(
    "deal_milestone_generation_failures_total",
    "Milestone batches that failed and were rolled back",
    ["deal_type"],
)

activity_log_failures_total = Counter(
    "deal_activity_log_failures_total",
    "Best-effort activity entries that could not be written",
    ["activity_type"],
)


def get_metrics_payload() -> bytes:
    """Render all registered metrics in Prometheus exposition format."""
    return generate_latest(REGISTRY)
