"""
Billing Schemas

Pydantic models returned by the billing jobs and the manual trigger endpoints.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class JobError(BaseModel):
    """A record that failed during a job run."""

    id: str
    reason: str


class JobRunResult(BaseModel):
    """Summary of one job run."""

    ok: bool = True
    job: str
    processed: int = 0
    skipped: int = 0
    errors: list[JobError] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)
    message: str | None = None
    executed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def add_error(self, item_id: object, reason: str) -> None:
        self.errors.append(JobError(id=str(item_id), reason=reason))

    def bump(self, key: str, amount: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + amount


class CronErrorResponse(BaseModel):
    """Body returned by the trigger endpoints on failure."""

    ok: bool = False
    message: str
