"""Service error hierarchy for RPC access, rate governance and job scheduling.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (bad parameters, unsupported calls)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (502, 503)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Malformed address or block parameters
    - Method not supported by the provider
    - Unsupported chain
    """

    pass


# Provider-specific errors
class ProviderError(ServiceError):
    """Base exception for JSON-RPC provider errors."""

    pass


class ProviderTransientError(ProviderError, TransientError):
    """Network failure, timeout or provider-side 5xx."""

    pass


class ProviderRateLimitError(ProviderTransientError):
    """Provider rejected the request with a rate limit (429 / -32005 throttling)."""

    pass


class ProviderRangeTooLargeError(ProviderError):
    """Provider refused a getLogs range (response size or result count ceiling).

    Neither transient nor permanent: the caller narrows the block range.
    """

    pass


class ProviderPermanentError(ProviderError, PermanentError):
    """Malformed request, unsupported method or unsupported chain."""

    pass


# Rate governance errors
class RateLimitedError(ServiceError):
    """Local rate governor refused a permit."""

    def __init__(self, retry_after: float, message: str | None = None):
        self.retry_after = retry_after
        super().__init__(message or f"Rate limit exceeded. Retry after {retry_after:.3f} seconds")


class QueueFullError(ServiceError):
    """Request queue reached its maximum size."""

    pass


class QueueClosedError(ServiceError):
    """Request queue was closed while the call was pending."""

    pass


# Scheduler errors
class SchedulerError(ServiceError):
    """Base exception for sync job scheduling errors."""

    pass


class SchedulerFullError(SchedulerError):
    """No room left in the sync job queue."""

    pass


class JobNotFoundError(SchedulerError):
    """Job id is unknown or was evicted after its cooldown."""

    pass


class ContractNotRegisteredError(PermanentError):
    """Contract is not registered and its token standard could not be detected."""

    pass
