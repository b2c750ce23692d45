"""
Error tracking, summary and retry schemas.
"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from syncjobs.v1.errors.classification import (
    ErrorCategory,
    ErrorSeverity,
    ErrorStage,
    RecoveryStrategy,
)


class ErrorRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_id: UUID | None = None
    provider: str | None = None
    stage: str | None = None
    occurred_at: datetime
    raw_message: str
    category: str
    severity: str
    retryable: bool
    user_message: str | None = None
    retry_count: int
    last_retry_at: datetime | None = None
    user_acknowledged: bool
    resolved_at: datetime | None = None
    resolution_method: str | None = None


class ErrorSummary(BaseModel):
    """Aggregate view of an owner's recent errors."""

    time_range_hours: int
    total_errors: int
    by_category: dict[str, int]
    by_severity: dict[str, int]
    critical_count: int
    retryable_count: int
    resolved_count: int
    pending_count: int
    critical_errors: list[ErrorRecordResponse] = Field(default_factory=list)
    retryable_errors: list[ErrorRecordResponse] = Field(default_factory=list)
    recent_errors: list[ErrorRecordResponse] = Field(default_factory=list)


class ErrorSummaryQuery(BaseModel):
    time_range_hours: int = Field(default=24, ge=1, le=168)
    include_resolved: bool = False
    provider: str | None = None
    stage: ErrorStage | None = None
    severity_filter: ErrorSeverity | None = None
    include_details: bool = True


class UrgencyResponse(BaseModel):
    score: int
    level: Literal["low", "medium", "high", "critical"]
    factors: list[str]
    requires_immediate_action: bool


class ErrorPattern(BaseModel):
    category: str
    severity: str
    count: int
    first_seen: datetime
    last_seen: datetime
    providers: list[str]
    sample_message: str


class SummaryResult(BaseModel):
    summary: ErrorSummary
    recent_errors: list[ErrorRecordResponse] = Field(default_factory=list)
    critical_errors: list[ErrorRecordResponse] = Field(default_factory=list)
    recovery_strategies: list[RecoveryStrategy] = Field(default_factory=list)
    error_patterns: list[ErrorPattern] = Field(default_factory=list)
    urgency: UrgencyResponse
    recommendations: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)


class RetryOptions(BaseModel):
    """Which errors to retry and how."""

    error_ids: list[UUID] | None = None
    job_ids: list[UUID] | None = None
    retry_all: bool = False
    provider: str | None = None
    category: ErrorCategory | None = None
    max_retries: int | None = Field(default=None, ge=1, le=10)
    retry_strategy: Literal["immediate", "delayed", "smart"] = "smart"
    delay_minutes: int | None = Field(default=None, ge=0, le=1440)
    include_auth_refresh: bool = True

    @model_validator(mode="after")
    def _require_selection(self) -> "RetryOptions":
        if not self.retry_all and not self.error_ids and not self.job_ids:
            raise ValueError("Provide error_ids, job_ids or retry_all=true")
        return self

    @property
    def is_manual(self) -> bool:
        return bool(self.error_ids or self.job_ids)


class RetryItemResult(BaseModel):
    error_id: UUID | None = None
    job_id: UUID | None = None
    category: str
    outcome: Literal["succeeded", "failed", "skipped"]
    method: str
    message: str
    scheduled_for: datetime | None = None
    delay_minutes: int | None = None


class RetrySummary(BaseModel):
    by_category: dict[str, int] = Field(default_factory=dict)
    by_method: dict[str, int] = Field(default_factory=dict)
    success_rate: float = 0.0


class RetryResult(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[RetryItemResult] = Field(default_factory=list)
    summary: RetrySummary = Field(default_factory=RetrySummary)
    recommendations: list[str] = Field(default_factory=list)


class RetryEligibility(BaseModel):
    error_id: UUID
    eligible: bool
    reason: str
    category: str
    retry_count: int
    job_status: str | None = None


class RetryStatistics(BaseModel):
    total_errors: int
    retryable_errors: int
    retried_errors: int
    resolved_after_retry: int
    exhausted_errors: int
    retry_success_rate: float
    by_category: dict[str, dict[str, Any]]


class ErrorActionResponse(BaseModel):
    error_id: UUID
    changed: bool
