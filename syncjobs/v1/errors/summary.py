"""
Error summary: the health report shown to operators and users.

Combines the tracker's aggregates with urgency scoring, recurring error
patterns, de-duplicated recovery strategies and plain-language advice.
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from syncjobs.config.logging import get_logger
from syncjobs.config.settings import Settings
from syncjobs.v1.errors.classification import (
    CATEGORY_PRECEDENCE,
    ErrorSeverity,
    RecoveryStrategy,
    dedupe_strategies,
    severity_rank,
)
from syncjobs.v1.errors.models import ErrorRecord
from syncjobs.v1.errors.schemas import (
    ErrorPattern,
    ErrorSummaryQuery,
    SummaryResult,
    UrgencyResponse,
)
from syncjobs.v1.errors.tracker import ErrorTracker, summarize
from syncjobs.v1.errors.urgency import UrgencyInputs, UrgencyScore, calculate_urgency_score

logger = get_logger(__name__)

RECURRING_PATTERN_THRESHOLD = 5

_CATEGORY_ACTIONS = {
    "authentication": "Check authentication credentials and refresh tokens",
    "permission": "Reconnect the account and grant the missing permissions",
    "quota": "Implement exponential backoff and rate limiting",
    "network": "Check network connectivity and retry logic",
    "data_format": "Review data validation and processing logic",
    "processing": "Review handler logs and reprocess pending jobs",
    "configuration": "Verify sync settings and environment configuration",
}


def suggested_action_for_category(category: str) -> str:
    return _CATEGORY_ACTIONS.get(
        category, "Review error logs and implement appropriate error handling"
    )


def identify_error_patterns(records: list[ErrorRecord]) -> list[ErrorPattern]:
    """Group errors by (category, severity), most frequent first."""
    groups: dict[tuple[str, str], list[ErrorRecord]] = {}
    for record in records:
        groups.setdefault((record.category, record.severity), []).append(record)

    patterns = []
    for (category, severity), members in groups.items():
        occurred = [m.occurred_at for m in members]
        patterns.append(
            ErrorPattern(
                category=category,
                severity=severity,
                count=len(members),
                first_seen=min(occurred),
                last_seen=max(occurred),
                providers=sorted({m.provider for m in members if m.provider}),
                sample_message=members[0].raw_message,
            )
        )
    patterns.sort(key=lambda p: (-p.count, severity_rank(p.severity), p.category))
    return patterns


def generate_recommendations(
    records: list[ErrorRecord],
    patterns: list[ErrorPattern],
    urgency: UrgencyScore,
) -> list[str]:
    if not records:
        return ["No recent errors - system is healthy"]

    recommendations = []
    if urgency.level == "critical":
        recommendations.append("Immediate action required: critical errors detected")
        recommendations.append("Review and resolve critical errors immediately")

    top = patterns[0] if patterns else None
    if top and top.count > RECURRING_PATTERN_THRESHOLD:
        recommendations.append(
            f"Address recurring {top.category} errors ({top.severity} severity, "
            f"{top.count} occurrences)"
        )

    categories = {r.category for r in records}
    if "authentication" in categories:
        recommendations.append("Check authentication credentials and token validity")
    if "permission" in categories:
        recommendations.append("Reconnect affected accounts with the required scopes")
    if "quota" in categories:
        recommendations.append("Implement exponential backoff for API calls")
        recommendations.append("Consider upgrading API rate limits")
    if "data_format" in categories:
        recommendations.append("Review data validation and processing logic")
    if len(records) > 50:
        recommendations.append("Consider implementing more robust error handling")
    return recommendations


def generate_next_steps(
    records: list[ErrorRecord], urgency: UrgencyScore
) -> list[str]:
    if not records:
        return ["Continue monitoring sync health"]

    steps = []
    categories = {r.category for r in records}
    for category in CATEGORY_PRECEDENCE:
        if category.value in categories:
            steps.append(suggested_action_for_category(category.value))

    retryable = sum(1 for r in records if r.retryable and not r.is_resolved)
    if retryable:
        steps.append(f"Retry {retryable} retryable error(s)")
    unacknowledged = sum(
        1 for r in records if not r.user_acknowledged and not r.is_resolved
    )
    if unacknowledged and not urgency.requires_immediate_action:
        steps.append("Acknowledge errors that need no further action")
    return steps


class ErrorSummaryService:
    """Builds SummaryResult reports."""

    def __init__(self, settings: Settings, tracker: ErrorTracker | None = None):
        self.settings = settings
        self.tracker = tracker or ErrorTracker(settings)

    async def get_error_summary(
        self,
        session: AsyncSession,
        owner_id: UUID,
        query: ErrorSummaryQuery | None = None,
    ) -> SummaryResult:
        query = query or ErrorSummaryQuery()
        sample_size = self.settings.error_summary_sample_size

        records = await self.tracker.fetch_window(
            session,
            owner_id,
            time_range_hours=query.time_range_hours,
            include_resolved=query.include_resolved,
            provider=query.provider,
            stage=query.stage.value if query.stage else None,
        )
        summary = summarize(records, query.time_range_hours, sample_size)

        filtered = records
        if query.severity_filter:
            filtered = [r for r in records if r.severity == query.severity_filter.value]

        critical = [r for r in filtered if r.severity == ErrorSeverity.CRITICAL.value]
        by_category: dict[str, int] = {}
        for record in filtered:
            by_category[record.category] = by_category.get(record.category, 0) + 1

        urgency = calculate_urgency_score(
            UrgencyInputs(
                critical_errors=len(critical),
                total_errors=len(filtered),
                time_range_hours=query.time_range_hours,
                by_category=by_category,
            )
        )

        strategies: list[RecoveryStrategy] = []
        for record in filtered:
            for raw in (record.classification or {}).get("recovery_strategies", []):
                strategies.append(RecoveryStrategy.model_validate(raw))

        patterns = identify_error_patterns(filtered)
        result = SummaryResult(
            summary=summary,
            recent_errors=[],
            critical_errors=[],
            recovery_strategies=dedupe_strategies(strategies),
            error_patterns=patterns,
            urgency=UrgencyResponse(**urgency.to_dict()),
            recommendations=generate_recommendations(filtered, patterns, urgency),
            next_steps=generate_next_steps(filtered, urgency),
        )

        if query.include_details:
            filtered_summary = summarize(filtered, query.time_range_hours, sample_size)
            result.recent_errors = filtered_summary.recent_errors
            result.critical_errors = filtered_summary.critical_errors
        else:
            result.summary.critical_errors = []
            result.summary.retryable_errors = []
            result.summary.recent_errors = []

        logger.info(
            "Error summary generated",
            owner_id=str(owner_id),
            total_errors=summary.total_errors,
            filtered_errors=len(filtered),
            urgency_score=urgency.score,
            urgency_level=urgency.level,
        )
        return result
