"""Domain errors raised by the deal pipeline.

Request handlers map these onto transport responses:
NotFoundOrAccessDenied -> 404, ValidationError -> 400, ConflictError -> 409,
PersistenceError -> 503.
"""

from __future__ import annotations


class DealflowError(Exception):
    """Base class for all deal pipeline errors."""


class NotFoundOrAccessDenied(DealflowError):
    """Deal or milestone is missing, deleted, or owned by someone else.

    Raised identically for all three cases so callers cannot probe for the
    existence of records they do not own.
    """

    def __init__(self, resource: str = "deal") -> None:
        self.resource = resource
        super().__init__(f"{resource.capitalize()} not found or access denied")


class NotFoundError(DealflowError):
    """A configuration record (deal type) is missing or inactive."""


class ValidationError(DealflowError):
    """Caller-correctable input error, carrying the offending field."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        self.message = message
        super().__init__(message)


class InvalidStageError(ValidationError):
    """Stage code is not a member of the deal type's pipeline."""

    def __init__(self, stage: str, valid_stages: list[str]) -> None:
        self.stage = stage
        self.valid_stages = valid_stages
        super().__init__(
            f"Invalid stage: {stage}. Valid stages: {', '.join(valid_stages)}",
            field="new_stage",
        )


class ConflictError(DealflowError):
    """Deal was modified concurrently; retry with a fresh read."""

    def __init__(self, deal_id: str) -> None:
        self.deal_id = deal_id
        super().__init__(f"Deal {deal_id} was modified concurrently")


class PersistenceError(DealflowError):
    """Storage is unavailable or rejected the write."""
