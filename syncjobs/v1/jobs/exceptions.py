"""
Exceptions raised by job handlers and the job store.

Handler exceptions carry a ``category`` hint the error classifier reads in
addition to the message text.
"""

from typing import Any

from syncjobs.v1.core.exceptions import ServiceUnavailableError, SyncJobsException


class JobHandlerError(Exception):
    """Base class for failures raised from inside a job handler."""

    category: str | None = None

    def __init__(self, message: str, provider: str | None = None):
        self.message = message
        self.provider = provider
        super().__init__(message)


class CredentialsExpiredError(JobHandlerError):
    category = "authentication"


class PermissionDeniedError(JobHandlerError):
    category = "permission"


class QuotaExceededError(JobHandlerError):
    category = "quota"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retry_after_seconds: int | None = None,
    ):
        super().__init__(message, provider)
        self.retry_after_seconds = retry_after_seconds


class ProviderUnavailableError(JobHandlerError):
    category = "network"


class MalformedPayloadError(JobHandlerError):
    category = "data_format"


class HandlerConfigurationError(JobHandlerError):
    category = "configuration"


class JobResultError(JobHandlerError):
    """A handler returned a result the job store cannot persist."""

    category = "processing"


class JobStoreUnavailableError(ServiceUnavailableError):
    """The job store could not be read or written."""

    def __init__(
        self,
        message: str = "Job store unavailable",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)


class InvalidTransitionError(SyncJobsException):
    """A status change that the state machine does not allow."""

    def __init__(self, expected: str, new: str):
        super().__init__(
            f"Transition {expected} -> {new} is not allowed",
            status_code=409,
            details={"from": expected, "to": new},
        )
        self.expected = expected
        self.new = new
