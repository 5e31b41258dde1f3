"""
MailRelay Exception Hierarchy

Structured exception classes for the relay engine and its providers.
All exceptions include code, message, and details for audit trail and
debugging. Provider bodies go into details (truncated), never into message.

Exception Hierarchy:
    MailRelayError
    ├── JobStoreError
    │   ├── JobNotFoundError
    │   └── IllegalTransitionError
    ├── ProviderError
    │   ├── ProviderRateLimitError      (transient, backoff)
    │   ├── ProviderTransientError      (transient, backoff)
    │   ├── ProviderPermanentError      (permanent, fail job)
    │   └── ProviderConfigurationError  (permanent, fail job)
    ├── ProcessingError
    │   └── MalformedResponseError
    └── RelayDepthExceededError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

# Keep provider payloads in details short enough for a log line
MAX_DETAIL_BODY_CHARS = 500


class MailRelayError(Exception):
    """
    Base exception for all MailRelay custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "RELAY_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# JOB STORE ERRORS
# =============================================================================

class JobStoreError(MailRelayError):
    """Base exception for job persistence errors."""
    default_code = "JOB_STORE_ERROR"


class JobNotFoundError(JobStoreError):
    """Job id does not exist."""
    default_code = "JOB_NOT_FOUND"
    default_severity = "P3"

    def __init__(self, job_id: str, **kwargs):
        details = kwargs.pop("details", {})
        details["job_id"] = job_id
        super().__init__(f"Job {job_id} not found", details=details, **kwargs)


class IllegalTransitionError(JobStoreError):
    """Requested status change is not a legal lifecycle edge (or lost a race)."""
    default_code = "ILLEGAL_TRANSITION"
    default_severity = "P1"

    def __init__(self, job_id: str, current: str, target: str, **kwargs):
        self.current = current
        self.target = target
        details = kwargs.pop("details", {})
        details.update({"job_id": job_id, "current": current, "target": target})
        super().__init__(
            f"Illegal transition for job {job_id}: {current} -> {target}",
            details=details,
            **kwargs,
        )


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class ProviderError(MailRelayError):
    """Base exception for external provider failures."""
    default_code = "PROVIDER_ERROR"

    # Whether retrying can ever succeed
    retryable: bool = True

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        **kwargs
    ):
        self.provider = provider
        self.status_code = status_code
        details = kwargs.pop("details", {})
        details.update({
            "provider": provider,
            "status_code": status_code,
        })
        if body:
            details["body"] = body[:MAX_DETAIL_BODY_CHARS]
        super().__init__(message, details=details, **kwargs)


class ProviderRateLimitError(ProviderError):
    """Provider throttled us (HTTP 429 or equivalent)."""
    default_code = "PROVIDER_RATE_LIMITED"
    default_severity = "P3"

    def __init__(
        self,
        message: str = "Rate limited by provider",
        retry_after_seconds: Optional[float] = None,
        **kwargs
    ):
        self.retry_after_seconds = retry_after_seconds
        details = kwargs.pop("details", {})
        details["retry_after_seconds"] = retry_after_seconds
        kwargs.setdefault("status_code", 429)
        super().__init__(message, details=details, **kwargs)


class ProviderTransientError(ProviderError):
    """Timeouts, connection resets and 5xx responses."""
    default_code = "PROVIDER_TRANSIENT"
    default_severity = "P3"


class ProviderPermanentError(ProviderError):
    """4xx responses that retrying cannot fix (revoked access, missing resource)."""
    default_code = "PROVIDER_PERMANENT"
    default_severity = "P1"
    retryable = False


class ProviderConfigurationError(ProviderError):
    """Credentials or endpoints missing for a provider."""
    default_code = "PROVIDER_NOT_CONFIGURED"
    default_severity = "P1"
    retryable = False


# =============================================================================
# PROCESSING ERRORS
# =============================================================================

class ProcessingError(MailRelayError):
    """Base exception for processing API output problems."""
    default_code = "PROCESSING_ERROR"


class MalformedResponseError(ProcessingError):
    """Processing API returned something that is not the expected structure."""
    default_code = "MALFORMED_RESPONSE"
    default_severity = "P3"

    def __init__(self, message: str, raw: Optional[str] = None, **kwargs):
        self.raw = raw
        details = kwargs.pop("details", {})
        if raw:
            details["raw"] = raw[:MAX_DETAIL_BODY_CHARS]
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# RELAY ERRORS
# =============================================================================

class RelayDepthExceededError(MailRelayError):
    """Relay chain grew past the ceiling without forward progress."""
    default_code = "RELAY_DEPTH_EXCEEDED"
    default_severity = "P1"

    def __init__(self, depth: int, ceiling: int, **kwargs):
        self.depth = depth
        self.ceiling = ceiling
        details = kwargs.pop("details", {})
        details.update({"relay_depth": depth, "ceiling": ceiling})
        super().__init__(
            f"Relay depth {depth} reached ceiling {ceiling} without progress",
            details=details,
            **kwargs,
        )
