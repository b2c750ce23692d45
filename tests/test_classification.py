import httpx
import pytest

from syncjobs.v1.errors.classification import (
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    ErrorStage,
    RecoveryAction,
    classify,
    classify_batch,
    generate_error_report,
    severity_rank,
)
from syncjobs.v1.jobs.exceptions import (
    CredentialsExpiredError,
    HandlerConfigurationError,
    QuotaExceededError,
)

CONTEXT = ErrorContext(provider="provider_a", stage=ErrorStage.INGESTION)


@pytest.mark.parametrize(
    ("message", "category", "severity", "retryable"),
    [
        ("invalid_grant", ErrorCategory.AUTHENTICATION, ErrorSeverity.CRITICAL, False),
        ("Token has been expired or revoked", ErrorCategory.AUTHENTICATION, ErrorSeverity.CRITICAL, False),
        ("403 Forbidden", ErrorCategory.PERMISSION, ErrorSeverity.HIGH, False),
        ("Rate limit exceeded", ErrorCategory.QUOTA, ErrorSeverity.MEDIUM, True),
        ("Connection refused", ErrorCategory.NETWORK, ErrorSeverity.MEDIUM, True),
        ("Failed to parse JSON: malformed body", ErrorCategory.DATA_FORMAT, ErrorSeverity.LOW, True),
        ("Normalization failed for record 12", ErrorCategory.PROCESSING, ErrorSeverity.MEDIUM, True),
        ("Configuration error: no executor registered for embed", ErrorCategory.CONFIGURATION, ErrorSeverity.MEDIUM, False),
    ],
)
def test_message_rules(message, category, severity, retryable):
    result = classify(message, CONTEXT)

    assert result.category == category
    assert result.severity == severity
    assert result.retryable is retryable
    assert result.technical_message == message
    assert result.recovery_strategies
    assert result.debug_context["classified"] is True


def test_unmatched_message_falls_back_to_processing():
    result = classify("Something odd happened", CONTEXT)

    assert result.category == ErrorCategory.PROCESSING
    assert result.severity == ErrorSeverity.MEDIUM
    assert result.retryable is True
    assert result.user_message == "An unexpected error occurred during sync"
    assert result.debug_context["classified"] is False


def test_precedence_picks_highest_category():
    result = classify("401 Unauthorized after rate limit exceeded", CONTEXT)

    assert result.category == ErrorCategory.AUTHENTICATION
    assert result.debug_context["candidates"] == ["authentication", "quota"]


def test_http_status_error_uses_status_code():
    request = httpx.Request("GET", "https://provider-a.example/messages")
    response = httpx.Response(429, request=request)
    error = httpx.HTTPStatusError("boom", request=request, response=response)

    result = classify(error, CONTEXT)

    assert result.category == ErrorCategory.QUOTA
    assert result.debug_context["matched_by"] == "type"
    assert result.debug_context["error_type"] == "HTTPStatusError"


def test_transport_error_is_network():
    request = httpx.Request("GET", "https://provider-a.example/messages")
    result = classify(httpx.ConnectError("boom", request=request), CONTEXT)

    assert result.category == ErrorCategory.NETWORK


def test_handler_exception_category_hint():
    assert classify(QuotaExceededError("slow down")).category == ErrorCategory.QUOTA
    assert classify(CredentialsExpiredError("nope")).category == ErrorCategory.AUTHENTICATION
    assert (
        classify(HandlerConfigurationError("executor missing")).category
        == ErrorCategory.CONFIGURATION
    )


def test_empty_exception_message_uses_class_name():
    result = classify(ValueError())

    assert result.technical_message == "ValueError"


def test_user_message_names_provider():
    result = classify("invalid_grant", {"provider": "provider_b"})

    assert result.user_message == "Your provider_b connection has expired or been revoked"
    assert result.debug_context["provider"] == "provider_b"


def test_classification_is_deterministic():
    first = classify("Connection reset by peer", CONTEXT)
    second = classify("Connection reset by peer", CONTEXT)

    assert first == second


def test_classify_batch_aggregates():
    batch = classify_batch(
        [
            ("invalid_grant", CONTEXT),
            ("Rate limit exceeded", CONTEXT),
            ("Rate limit exceeded", None),
        ]
    )

    assert batch.total_errors == 3
    assert batch.by_category == {"authentication": 1, "quota": 2}
    assert batch.most_critical.category == ErrorCategory.AUTHENTICATION
    actions = [s.action for s in batch.suggested_actions]
    assert len(actions) == len(set(actions))
    assert RecoveryAction.REFRESH_TOKEN in actions


def test_severity_rank_orders_critical_first():
    assert severity_rank("critical") < severity_rank("high") < severity_rank("low")
    assert severity_rank("unknown") == 4


def test_error_report():
    report = generate_error_report(classify("invalid_grant", CONTEXT))

    assert report["title"] == "Critical Issue"
    assert report["severity"] == "critical"
    assert report["actions"][0]["action"] == "refresh_token"
