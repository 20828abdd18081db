"""Deal pipeline module -- deal types, stage transitions, milestones, and audit trail.

Provides SQLAlchemy models (DealType, Deal, Milestone, Activity,
MilestoneTrigger), Pydantic schemas, DealRepository for owner-scoped async
CRUD, StageTransitionEngine for stage changes, and DealService as the
external interface.
"""
