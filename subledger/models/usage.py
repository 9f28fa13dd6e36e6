"""
Quota status and token usage models.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, computed_field

from subledger.models.subscriber import Plan


class TokenStatus(BaseModel):
    """Effective budget of a subscriber for the current cycle."""

    subscriber_id: str
    plan: Plan
    input_tokens_remaining: int = Field(ge=0)
    output_tokens_remaining: int = Field(ge=0)
    token_reset_date: datetime | None = None
    units_used: int = Field(default=0, ge=0)
    unit_limit: int = Field(default=0, ge=0)
    sufficient: bool = Field(description="Enough tokens for the requested (or any) work")
    exhausted: bool = Field(description="Either pool is at zero")

    @computed_field
    @property
    def units_remaining(self) -> int:
        return max(0, self.unit_limit - self.units_used)


class UsageEstimate(BaseModel):
    """Advisory pre-flight token estimate. Never authoritative."""

    estimated_input: int = Field(ge=0)
    estimated_output: int = Field(ge=0)


class SweepResult(BaseModel):
    """Outcome of a bulk cycle reset."""

    scanned: int = Field(default=0, ge=0)
    count: int = Field(default=0, ge=0, description="Subscribers successfully reset")
    failed: list[str] = Field(default_factory=list, description="Subscriber IDs that failed")


class GenerationStatus(str, Enum):
    """Outcome of a metered generation attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class TokenUsageCreate(BaseModel):
    """One metered generation attempt, recorded whether or not its result is saved."""

    subscriber_id: str
    email: str
    video_id: str
    video_url: str
    video_title: str | None = None
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    model: str = Field(default="gpt-5-nano")
    operation: str = Field(default="summary_generation")
    summary_id: str | None = None
    is_saved: bool = False
    status: GenerationStatus = GenerationStatus.SUCCESS
    error_message: str | None = None


class TokenUsageRecord(TokenUsageCreate):
    """Persisted usage record."""

    usage_id: int
    total_tokens: int = Field(ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class TokenUsageAnalytics(BaseModel):
    """Lifetime usage totals for a subscriber."""

    total_generations: int = 0
    total_saved: int = 0
    total_unsaved: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
