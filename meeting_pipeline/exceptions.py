"""
Custom exceptions for the meeting pipeline.
"""
from typing import Optional


class PipelineError(Exception):
    """Base exception for pipeline errors."""
    pass


class ConfigurationError(PipelineError):
    """Configuration or environment variable errors."""
    pass


class ValidationError(PipelineError):
    """Bad input shape. Never retried."""
    pass


class UnrecognizedEvent(ValidationError):
    """Event (source, detailType) pair is not part of the stage vocabulary."""
    def __init__(self, source: Optional[str], detail_type: Optional[str]):
        self.source = source
        self.detail_type = detail_type
        super().__init__(f"Unrecognized event: source={source!r} detailType={detail_type!r}")


class NotFound(PipelineError):
    """Meeting record does not exist."""
    def __init__(self, meeting_id: str):
        self.meeting_id = meeting_id
        super().__init__(f"Meeting not found: {meeting_id}")


class PreconditionFailed(PipelineError):
    """Stored status does not match the expected one (stale or duplicate event)."""
    def __init__(self, meeting_id: str, expected=None, actual: Optional[str] = None, message: str = None):
        self.meeting_id = meeting_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"Meeting {meeting_id} is '{actual}', expected {expected}"
        )


class InvalidTransition(PreconditionFailed):
    """Update would move a status or sub-status backwards."""
    pass


class MissingTranscript(PipelineError):
    """Meeting has no transcript to extract tasks from."""
    pass


class NoTasksToSync(PipelineError):
    """Meeting has no extracted tasks to push to the issue tracker."""
    pass


class ProviderError(PipelineError):
    """Base class for external provider errors."""
    def __init__(self, message: str, status_code: int = None, provider: str = None):
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)


class ProviderThrottled(ProviderError):
    """Provider rate limit exceeded."""
    def __init__(self, message: str, retry_after: float = None, provider: str = None):
        self.retry_after = retry_after
        super().__init__(message, status_code=429, provider=provider)


class ProviderUnavailable(ProviderError):
    """Transient provider failure (5xx, connection errors)."""
    pass


class ProviderTimeout(ProviderUnavailable):
    """Provider call exceeded its time bound."""
    pass


class ProviderRejected(ProviderError):
    """Permission or validation error reported by the provider. Fatal."""
    pass


class InvalidProviderResponse(ProviderError):
    """Provider answered, but not in the expected shape."""
    pass
