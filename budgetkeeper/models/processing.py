"""
Engine Result Models

What one run of the recurring engine reports back to its caller
(the scheduler or the route layer).
"""

from datetime import date, datetime
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from budgetkeeper.models.entities import utc_now


class RuleFailure(BaseModel):
    """A rule (or a whole user partition) the engine could not process."""

    user_id: UUID
    rule_id: Optional[UUID] = Field(
        default=None,
        description="None when the user's rule collection itself could not be read"
    )
    error_type: str
    message: str


class ProcessingSummary(BaseModel):
    """
    Outcome of a batch run.

    rules_processed counts rules that were due and generated
    at least one transaction.
    """

    run_id: UUID = Field(default_factory=uuid4)
    as_of: date
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    rules_processed: int = Field(default=0, ge=0)
    transactions_generated: int = Field(default=0, ge=0)
    failures: list[RuleFailure] = Field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return len(self.failures) > 0
