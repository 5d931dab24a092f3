"""Error taxonomy shared by the job pipeline and the HTTP surface."""

from typing import Any, Dict, Optional


class LeadFinderError(Exception):
    """Base class carrying a machine readable kind and an HTTP status."""

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "kind": type(self).__name__, "message": self.message}


class ValidationError(LeadFinderError):
    kind = "validation_error"
    status_code = 400


class InvalidQueryError(ValidationError):
    def __init__(self, query: Any) -> None:
        super().__init__(
            "Invalid search query. Query must be 2-200 characters and contain only letters, "
            "numbers, spaces, and common punctuation.",
            context={"query": str(query)[:50]},
        )


class InvalidLocationError(ValidationError):
    def __init__(self, location: Any) -> None:
        super().__init__(
            "Invalid location. Location must be 2-100 characters.",
            context={"location": str(location)[:50]},
        )


class InvalidCountError(ValidationError):
    def __init__(self, count: Any) -> None:
        super().__init__("Invalid count. Must be a whole number.", context={"count": str(count)[:20]})


class NotFoundError(LeadFinderError):
    kind = "not_found"
    status_code = 404


class JobNotFoundError(NotFoundError):
    kind = "job_not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", context={"job_id": job_id})
        self.job_id = job_id


class ProviderError(LeadFinderError):
    """A structured-data provider call failed; callers fall back to the next source."""

    kind = "provider_error"
    status_code = 502

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}", context={"provider": provider})
        self.provider = provider


class ProviderConfigError(ProviderError):
    """Credentials rejected or provider misconfigured; disable it for the session."""

    kind = "provider_config_error"


class ProviderQuotaError(ProviderError):
    kind = "provider_quota_exhausted"


class RateLimitError(LeadFinderError):
    kind = "rate_limit_exceeded"
    status_code = 429

    def __init__(self, message: str, retry_after: Optional[int] = None) -> None:
        super().__init__(message, context={"retry_after": retry_after})
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.retry_after is not None:
            payload["retryAfter"] = self.retry_after
        return payload


class StorageError(LeadFinderError):
    kind = "storage_error"
    status_code = 500

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}", context={"operation": operation})
        self.operation = operation


def error_message(exc: BaseException) -> str:
    if isinstance(exc, LeadFinderError):
        return exc.message
    return str(exc) or exc.__class__.__name__
