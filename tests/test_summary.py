import uuid
from datetime import UTC, datetime

import pytest

from syncjobs.v1.errors.models import ErrorRecord
from syncjobs.v1.errors.schemas import ErrorSummaryQuery
from syncjobs.v1.errors.summary import (
    ErrorSummaryService,
    identify_error_patterns,
    suggested_action_for_category,
)
from syncjobs.v1.errors.tracker import ErrorTracker


@pytest.fixture
def summary_service(test_settings, session_factory):
    return ErrorSummaryService(
        test_settings, tracker=ErrorTracker(test_settings, session_factory)
    )


async def test_empty_window_is_healthy(summary_service, session, owner_id):
    result = await summary_service.get_error_summary(session, owner_id)

    assert result.summary.total_errors == 0
    assert result.urgency.score == 0
    assert result.urgency.level == "low"
    assert result.recommendations == ["No recent errors - system is healthy"]
    assert result.next_steps == ["Continue monitoring sync health"]
    assert result.error_patterns == []


async def test_critical_filter_scores_only_critical_errors(
    summary_service, session, owner_id, record_job_error
):
    for _ in range(3):
        await record_job_error(owner_id, None, "invalid_grant")
    for _ in range(2):
        await record_job_error(owner_id, None, "Connection refused")

    result = await summary_service.get_error_summary(
        session,
        owner_id,
        ErrorSummaryQuery(time_range_hours=1, severity_filter="critical"),
    )

    # The aggregate still covers the whole window
    assert result.summary.total_errors == 5
    assert result.summary.critical_count == 3
    assert result.urgency.score == 80
    assert result.urgency.level == "critical"
    assert result.urgency.requires_immediate_action is True
    assert len(result.recent_errors) == 3
    assert {e.severity for e in result.recent_errors} == {"critical"}
    assert [p.category for p in result.error_patterns] == ["authentication"]
    assert result.recommendations[0] == (
        "Immediate action required: critical errors detected"
    )
    assert "Check authentication credentials and token validity" in result.recommendations


async def test_immediate_action_tracks_the_score(
    summary_service, session, owner_id, record_job_error
):
    await record_job_error(owner_id, None, "invalid_grant")

    result = await summary_service.get_error_summary(
        session, owner_id, ErrorSummaryQuery(time_range_hours=24)
    )

    # 25 for one critical error plus 20 for authentication
    assert result.urgency.score == 45
    assert result.urgency.level == "medium"
    assert result.urgency.requires_immediate_action is False


async def test_recurring_pattern_is_called_out(
    summary_service, session, owner_id, record_job_error
):
    for n in range(6):
        await record_job_error(owner_id, None, f"Connection refused by host-{n}")

    result = await summary_service.get_error_summary(session, owner_id)

    pattern = result.error_patterns[0]
    assert pattern.category == "network"
    assert pattern.count == 6
    assert pattern.providers == ["provider_a"]
    assert (
        "Address recurring network errors (medium severity, 6 occurrences)"
        in result.recommendations
    )
    assert result.next_steps[0] == "Check network connectivity and retry logic"
    assert "Retry 6 retryable error(s)" in result.next_steps


async def test_recovery_strategies_are_deduplicated(
    summary_service, session, owner_id, record_job_error
):
    for _ in range(3):
        await record_job_error(owner_id, None, "Rate limit exceeded")

    result = await summary_service.get_error_summary(session, owner_id)

    actions = [s.action for s in result.recovery_strategies]
    assert actions
    assert len(actions) == len(set(actions))


async def test_without_details(summary_service, session, owner_id, record_job_error):
    await record_job_error(owner_id, None, "invalid_grant")

    result = await summary_service.get_error_summary(
        session, owner_id, ErrorSummaryQuery(include_details=False)
    )

    assert result.summary.total_errors == 1
    assert result.summary.recent_errors == []
    assert result.summary.critical_errors == []
    assert result.recent_errors == []
    assert result.critical_errors == []


async def test_resolved_errors_are_excluded_by_default(
    summary_service, session, owner_id, record_job_error
):
    open_record = await record_job_error(owner_id, None, "Connection refused")
    resolved = await record_job_error(owner_id, None, "Connection refused")
    await summary_service.tracker.resolve_error(
        session, owner_id, resolved.id, method="manual"
    )

    default = await summary_service.get_error_summary(session, owner_id)
    everything = await summary_service.get_error_summary(
        session, owner_id, ErrorSummaryQuery(include_resolved=True)
    )

    assert [e.id for e in default.recent_errors] == [open_record.id]
    assert everything.summary.total_errors == 2
    assert everything.summary.resolved_count == 1


async def test_provider_and_owner_scoping(
    summary_service, session, owner_id, record_job_error
):
    await record_job_error(owner_id, None, "Connection refused", provider="provider_b")
    await record_job_error(owner_id, None, "Connection refused")
    await record_job_error(uuid.uuid4(), None, "Connection refused")

    result = await summary_service.get_error_summary(
        session, owner_id, ErrorSummaryQuery(provider="provider_b")
    )

    assert result.summary.total_errors == 1
    assert result.recent_errors[0].provider == "provider_b"


def test_time_range_is_bounded():
    with pytest.raises(ValueError):
        ErrorSummaryQuery(time_range_hours=0)
    with pytest.raises(ValueError):
        ErrorSummaryQuery(time_range_hours=169)


def test_patterns_sort_by_count_then_severity():
    now = datetime.now(UTC)

    def record(category, severity):
        return ErrorRecord(
            raw_message="boom",
            classification={"category": category, "severity": severity},
            occurred_at=now,
        )

    records = [
        record("network", "medium"),
        record("authentication", "critical"),
        record("network", "medium"),
    ]

    patterns = identify_error_patterns(records)

    assert [(p.category, p.count) for p in patterns] == [
        ("network", 2),
        ("authentication", 1),
    ]


def test_suggested_action_fallback():
    assert suggested_action_for_category("quota").startswith("Implement exponential")
    assert suggested_action_for_category("mystery").startswith("Review error logs")
