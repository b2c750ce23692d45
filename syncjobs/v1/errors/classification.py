"""
Error classification engine.

Turns a raw failure (an exception or a bare message) plus the context it
happened in into a structured Classification: category, severity,
retryability, a user-facing message and ranked recovery strategies.

The module is pure. It touches neither the network nor the database and
carries no timestamps, so identical inputs always produce identical output.
"""

import json
import re
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field


class ErrorCategory(str, Enum):
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    QUOTA = "quota"
    NETWORK = "network"
    DATA_FORMAT = "data_format"
    PROCESSING = "processing"
    CONFIGURATION = "configuration"


class ErrorSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ErrorStage(str, Enum):
    INGESTION = "ingestion"
    NORMALIZATION = "normalization"
    PROCESSING = "processing"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    REFRESH_TOKEN = "refresh_token"
    ADJUST_PREFERENCES = "adjust_preferences"
    SKIP_ITEM = "skip_item"
    CONTACT_SUPPORT = "contact_support"
    PROCESS_JOBS = "process_jobs"
    WAIT_AND_RETRY = "wait_and_retry"


# Highest first: authentication failures block everything downstream
CATEGORY_PRECEDENCE: tuple[ErrorCategory, ...] = (
    ErrorCategory.AUTHENTICATION,
    ErrorCategory.PERMISSION,
    ErrorCategory.QUOTA,
    ErrorCategory.NETWORK,
    ErrorCategory.DATA_FORMAT,
    ErrorCategory.PROCESSING,
    ErrorCategory.CONFIGURATION,
)

SEVERITY_ORDER: tuple[ErrorSeverity, ...] = (
    ErrorSeverity.CRITICAL,
    ErrorSeverity.HIGH,
    ErrorSeverity.MEDIUM,
    ErrorSeverity.LOW,
)

NON_RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.AUTHENTICATION,
        ErrorCategory.PERMISSION,
        ErrorCategory.CONFIGURATION,
    }
)


class RecoveryStrategy(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: RecoveryAction
    label: str
    description: str
    auto_retryable: bool
    urgency: str | None = None
    estimated_time: str | None = None
    prevention_tips: tuple[str, ...] = ()


class ErrorContext(BaseModel):
    """Where a failure happened."""

    model_config = ConfigDict(frozen=True)

    provider: str | None = None
    stage: ErrorStage | None = None
    operation: str | None = None
    job_id: str | None = None
    job_kind: str | None = None


class Classification(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    user_message: str
    technical_message: str
    estimated_impact: str
    recovery_strategies: tuple[RecoveryStrategy, ...] = ()
    debug_context: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class _Rule:
    category: ErrorCategory
    severity: ErrorSeverity
    pattern: re.Pattern[str]
    message: Callable[[str], str]
    strategies: tuple[RecoveryStrategy, ...]


def _strategy(action: RecoveryAction, label: str, description: str, **kw) -> RecoveryStrategy:
    kw.setdefault("auto_retryable", False)
    if "prevention_tips" in kw:
        kw["prevention_tips"] = tuple(kw["prevention_tips"])
    return RecoveryStrategy(action=action, label=label, description=description, **kw)


_RULES: dict[ErrorCategory, _Rule] = {
    ErrorCategory.AUTHENTICATION: _Rule(
        category=ErrorCategory.AUTHENTICATION,
        severity=ErrorSeverity.CRITICAL,
        pattern=re.compile(
            r"invalid[_\s-]?(credentials?|grant)|unauthori[sz]ed|\b401\b"
            r"|access[_\s-]?denied|token.*(invalid|expired|revoked)"
            r"|(expired|revoked).*(token|credential)|credentials?.*expired",
            re.IGNORECASE,
        ),
        message=lambda provider: f"Your {provider} connection has expired or been revoked",
        strategies=(
            _strategy(
                RecoveryAction.REFRESH_TOKEN,
                "Reconnect Account",
                "Sign in again to restore access",
                urgency="immediate",
                estimated_time="1-2 minutes",
                prevention_tips=[
                    "Keep your account password secure",
                    "Avoid revoking app permissions manually",
                ],
            ),
            _strategy(
                RecoveryAction.CONTACT_SUPPORT,
                "Contact Support",
                "Get help if reconnection doesn't work",
                urgency="low",
                estimated_time="24 hours",
            ),
        ),
    ),
    ErrorCategory.PERMISSION: _Rule(
        category=ErrorCategory.PERMISSION,
        severity=ErrorSeverity.HIGH,
        pattern=re.compile(
            r"permission.*denied|insufficient.*(scope|permission)"
            r"|access.*forbidden|\bforbidden\b|\b403\b|scope.*required",
            re.IGNORECASE,
        ),
        message=lambda provider: f"Missing required permissions for {provider} access",
        strategies=(
            _strategy(
                RecoveryAction.REFRESH_TOKEN,
                "Grant Required Permissions",
                "Reconnect with full permissions enabled",
                urgency="high",
                estimated_time="2-3 minutes",
                prevention_tips=[
                    "Grant all requested permissions when connecting",
                    "Check the account's security settings",
                ],
            ),
            _strategy(
                RecoveryAction.CONTACT_SUPPORT,
                "Permission Help",
                "Get help with account permission setup",
                urgency="low",
                estimated_time="24 hours",
            ),
        ),
    ),
    ErrorCategory.QUOTA: _Rule(
        category=ErrorCategory.QUOTA,
        severity=ErrorSeverity.MEDIUM,
        pattern=re.compile(
            r"quota.*exceeded|rate[_\s-]?limit|\b429\b|too[_\s-]?many[_\s-]?requests"
            r"|limit.*reached",
            re.IGNORECASE,
        ),
        message=lambda provider: f"{provider.capitalize()} API limits have been reached",
        strategies=(
            _strategy(
                RecoveryAction.WAIT_AND_RETRY,
                "Wait and Retry",
                "Wait for the quota to reset and try again",
                auto_retryable=True,
                urgency="medium",
                estimated_time="1-24 hours",
                prevention_tips=[
                    "Reduce sync frequency",
                    "Sync smaller date ranges",
                ],
            ),
            _strategy(
                RecoveryAction.ADJUST_PREFERENCES,
                "Reduce Sync Scope",
                "Limit the date range or add filters",
                urgency="low",
                estimated_time="2-3 minutes",
            ),
        ),
    ),
    ErrorCategory.NETWORK: _Rule(
        category=ErrorCategory.NETWORK,
        severity=ErrorSeverity.MEDIUM,
        pattern=re.compile(
            r"network.*error|connection.*(failed|refused|reset|error|aborted)"
            r"|time[d\s-]?out|\b50[234]\b|dns.*error|econnreset|etimedout"
            r"|econnrefused|service unavailable|bad gateway",
            re.IGNORECASE,
        ),
        message=lambda provider: "Network connectivity issues prevented sync completion",
        strategies=(
            _strategy(
                RecoveryAction.RETRY,
                "Retry Sync",
                "Try the sync operation again",
                auto_retryable=True,
                urgency="medium",
                estimated_time="1-2 minutes",
                prevention_tips=[
                    "Check your internet connection",
                    "Try again during non-peak hours",
                ],
            ),
            _strategy(
                RecoveryAction.WAIT_AND_RETRY,
                "Wait and Retry",
                "Wait a few minutes before trying again",
                auto_retryable=True,
                urgency="low",
                estimated_time="5-10 minutes",
            ),
        ),
    ),
    ErrorCategory.DATA_FORMAT: _Rule(
        category=ErrorCategory.DATA_FORMAT,
        severity=ErrorSeverity.LOW,
        pattern=re.compile(
            r"pars(e|ing).*(error|failed)|invalid.*format|malformed"
            r"|encoding.*error|json.*error|expecting value|mime.*type"
            r"|unicode.*decode",
            re.IGNORECASE,
        ),
        message=lambda provider: f"Some {provider} items contain data that couldn't be processed",
        strategies=(
            _strategy(
                RecoveryAction.SKIP_ITEM,
                "Skip Problem Items",
                "Continue while skipping the problematic items",
                urgency="low",
                estimated_time="Immediate",
                prevention_tips=[
                    "Problematic items are kept for manual review",
                    "Most of your data is still imported",
                ],
            ),
            _strategy(
                RecoveryAction.CONTACT_SUPPORT,
                "Report Data Issue",
                "Help improve handling of unusual item formats",
                urgency="low",
                estimated_time="24-48 hours",
            ),
        ),
    ),
    ErrorCategory.PROCESSING: _Rule(
        category=ErrorCategory.PROCESSING,
        severity=ErrorSeverity.MEDIUM,
        pattern=re.compile(
            r"normali[sz]ation.*failed|job.*failed|processing.*error"
            r"|database.*constraint|constraint failed|validation.*error"
            r"|handler.*failed",
            re.IGNORECASE,
        ),
        message=lambda provider: "Data was imported but processing is incomplete",
        strategies=(
            _strategy(
                RecoveryAction.PROCESS_JOBS,
                "Process Pending Data",
                "Manually trigger processing of imported data",
                urgency="medium",
                estimated_time="2-5 minutes",
                prevention_tips=[
                    "Processing can be triggered manually anytime",
                    "Imported data is kept until it is processed",
                ],
            ),
            _strategy(
                RecoveryAction.RETRY,
                "Retry Processing",
                "Attempt to process the data again",
                auto_retryable=True,
                urgency="medium",
                estimated_time="1-2 minutes",
            ),
        ),
    ),
    ErrorCategory.CONFIGURATION: _Rule(
        category=ErrorCategory.CONFIGURATION,
        severity=ErrorSeverity.MEDIUM,
        pattern=re.compile(
            r"configuration.*error|settings.*invalid|invalid.*settings"
            r"|preference.*error|query.*invalid|not configured|misconfigur",
            re.IGNORECASE,
        ),
        message=lambda provider: "Sync settings need to be adjusted",
        strategies=(
            _strategy(
                RecoveryAction.ADJUST_PREFERENCES,
                "Review Settings",
                "Check and update your sync preferences",
                urgency="medium",
                estimated_time="2-3 minutes",
                prevention_tips=[
                    "Use simpler search queries",
                    "Verify label names are correct",
                    "Check date range settings",
                ],
            ),
            _strategy(
                RecoveryAction.CONTACT_SUPPORT,
                "Configuration Help",
                "Get help with your sync settings",
                urgency="low",
                estimated_time="24 hours",
            ),
        ),
    ),
}

_DEFAULT_STRATEGIES = (
    _strategy(
        RecoveryAction.RETRY,
        "Try Again",
        "Retry the operation that failed",
        auto_retryable=True,
        urgency="medium",
        estimated_time="1-2 minutes",
    ),
    _strategy(
        RecoveryAction.CONTACT_SUPPORT,
        "Get Help",
        "Contact support for assistance",
        urgency="low",
        estimated_time="24 hours",
    ),
)

_IMPACTS: dict[ErrorSeverity, dict[ErrorCategory, str]] = {
    ErrorSeverity.CRITICAL: {
        ErrorCategory.AUTHENTICATION: "Complete sync blocked until reconnection",
        ErrorCategory.NETWORK: "All sync operations halted",
        ErrorCategory.QUOTA: "Sync completely stopped",
        ErrorCategory.DATA_FORMAT: "Critical data processing failed",
        ErrorCategory.PROCESSING: "Essential functionality unavailable",
        ErrorCategory.PERMISSION: "Core features inaccessible",
        ErrorCategory.CONFIGURATION: "System unusable with current settings",
    },
    ErrorSeverity.HIGH: {
        ErrorCategory.AUTHENTICATION: "Major features unavailable",
        ErrorCategory.NETWORK: "Frequent sync failures expected",
        ErrorCategory.QUOTA: "Limited sync capability",
        ErrorCategory.DATA_FORMAT: "Significant data loss possible",
        ErrorCategory.PROCESSING: "Important features may not work",
        ErrorCategory.PERMISSION: "Key functionality restricted",
        ErrorCategory.CONFIGURATION: "Poor sync performance",
    },
    ErrorSeverity.MEDIUM: {
        ErrorCategory.AUTHENTICATION: "Some sync issues expected",
        ErrorCategory.NETWORK: "Occasional sync delays",
        ErrorCategory.QUOTA: "Reduced sync frequency needed",
        ErrorCategory.DATA_FORMAT: "Some items may be skipped",
        ErrorCategory.PROCESSING: "Data available but not fully processed",
        ErrorCategory.PERMISSION: "Limited feature access",
        ErrorCategory.CONFIGURATION: "Suboptimal sync behavior",
    },
    ErrorSeverity.LOW: {
        ErrorCategory.AUTHENTICATION: "Minor authentication warnings",
        ErrorCategory.NETWORK: "Rare connectivity issues",
        ErrorCategory.QUOTA: "Slight performance impact",
        ErrorCategory.DATA_FORMAT: "Few items may be skipped",
        ErrorCategory.PROCESSING: "Minor processing delays",
        ErrorCategory.PERMISSION: "Optional features affected",
        ErrorCategory.CONFIGURATION: "Minor efficiency loss",
    },
}


def _type_categories(error: BaseException) -> set[ErrorCategory]:
    """Categories implied by the exception type alone."""
    found: set[ErrorCategory] = set()

    hint = getattr(error, "category", None)
    if isinstance(hint, str):
        try:
            found.add(ErrorCategory(hint))
        except ValueError:
            pass

    if isinstance(error, httpx.HTTPStatusError):
        code = error.response.status_code
        if code == 401:
            found.add(ErrorCategory.AUTHENTICATION)
        elif code == 403:
            found.add(ErrorCategory.PERMISSION)
        elif code == 429:
            found.add(ErrorCategory.QUOTA)
        elif code >= 500:
            found.add(ErrorCategory.NETWORK)
    elif isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
        found.add(ErrorCategory.NETWORK)
    elif isinstance(error, PermissionError):
        found.add(ErrorCategory.PERMISSION)
    elif isinstance(error, (json.JSONDecodeError, UnicodeError)):
        found.add(ErrorCategory.DATA_FORMAT)

    return found


def _message_of(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        text = str(error)
        return text or error.__class__.__name__
    return str(error)


def classify(
    error: BaseException | str,
    context: ErrorContext | dict[str, Any] | None = None,
) -> Classification:
    """
    Classify a failure.

    Every rule whose pattern matches the message, plus every category the
    exception type implies, is a candidate; the highest in
    CATEGORY_PRECEDENCE wins. Nothing matching means processing/medium.
    """
    if not isinstance(context, ErrorContext):
        context = ErrorContext(**(context or {}))

    message = _message_of(error)
    candidates: set[ErrorCategory] = set()
    matched_by: dict[ErrorCategory, str] = {}

    for category, rule in _RULES.items():
        if rule.pattern.search(message):
            candidates.add(category)
            matched_by[category] = "message"
    if isinstance(error, BaseException):
        for category in _type_categories(error):
            candidates.add(category)
            matched_by.setdefault(category, "type")

    debug_context: dict[str, Any] = {
        "provider": context.provider,
        "stage": context.stage.value if context.stage else None,
        "operation": context.operation,
        "job_id": context.job_id,
        "job_kind": context.job_kind,
        "error_type": error.__class__.__name__
        if isinstance(error, BaseException)
        else None,
    }
    provider_label = context.provider or "provider"

    if not candidates:
        return Classification(
            category=ErrorCategory.PROCESSING,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            user_message="An unexpected error occurred during sync",
            technical_message=message,
            estimated_impact="Some functionality may be limited until resolved",
            recovery_strategies=_DEFAULT_STRATEGIES,
            debug_context={**debug_context, "classified": False},
        )

    category = next(c for c in CATEGORY_PRECEDENCE if c in candidates)
    rule = _RULES[category]
    return Classification(
        category=category,
        severity=rule.severity,
        retryable=category not in NON_RETRYABLE_CATEGORIES,
        user_message=rule.message(provider_label),
        technical_message=message,
        estimated_impact=_IMPACTS[rule.severity][category],
        recovery_strategies=rule.strategies,
        debug_context={
            **debug_context,
            "classified": True,
            "matched_by": matched_by[category],
            "candidates": [c.value for c in CATEGORY_PRECEDENCE if c in candidates],
        },
    )


class BatchClassification(BaseModel):
    classifications: list[Classification]
    total_errors: int
    by_category: dict[str, int]
    by_severity: dict[str, int]
    most_critical: Classification | None = None
    suggested_actions: list[RecoveryStrategy]


def dedupe_strategies(
    strategies: list[RecoveryStrategy] | tuple[RecoveryStrategy, ...],
) -> list[RecoveryStrategy]:
    """Keep the first strategy per action, preserving order."""
    seen: set[RecoveryAction] = set()
    unique = []
    for strategy in strategies:
        if strategy.action not in seen:
            seen.add(strategy.action)
            unique.append(strategy)
    return unique


def severity_rank(severity: ErrorSeverity | str) -> int:
    """0 for critical up to 3 for low; unknown severities sort last."""
    try:
        return SEVERITY_ORDER.index(ErrorSeverity(severity))
    except ValueError:
        return len(SEVERITY_ORDER)


def classify_batch(
    errors: list[tuple[BaseException | str, ErrorContext | dict[str, Any] | None]],
) -> BatchClassification:
    """Classify several failures and aggregate the result."""
    classifications = [classify(error, context) for error, context in errors]

    by_category = Counter(c.category.value for c in classifications)
    by_severity = Counter(c.severity.value for c in classifications)
    most_critical = min(
        classifications, key=lambda c: severity_rank(c.severity), default=None
    )

    return BatchClassification(
        classifications=classifications,
        total_errors=len(classifications),
        by_category=dict(by_category),
        by_severity=dict(by_severity),
        most_critical=most_critical,
        suggested_actions=dedupe_strategies(
            [s for c in classifications for s in c.recovery_strategies]
        ),
    )


_SEVERITY_LABELS = {
    ErrorSeverity.CRITICAL: "Critical Issue",
    ErrorSeverity.HIGH: "High Priority",
    ErrorSeverity.MEDIUM: "Moderate Issue",
    ErrorSeverity.LOW: "Minor Issue",
}


def generate_error_report(classification: Classification) -> dict[str, Any]:
    """User-facing report for a single classification."""
    return {
        "title": _SEVERITY_LABELS[classification.severity],
        "message": classification.user_message,
        "actions": [s.model_dump(mode="json") for s in classification.recovery_strategies],
        "severity": classification.severity.value,
        "impact": classification.estimated_impact,
    }
