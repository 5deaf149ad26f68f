"""
Shared helpers: timestamps, provider error translation, retries and payload parsing.
"""
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)
from datetime import datetime, timezone
import json
import logging
from typing import Callable, TypeVar, Any, Optional
import httpx

from meeting_pipeline.exceptions import (
    ProviderError,
    ProviderRejected,
    ProviderThrottled,
    ProviderTimeout,
    ProviderUnavailable,
)
from meeting_pipeline.monitoring import provider_requests_total, record_error

# tenacity's logging hooks expect a stdlib logger
_retry_logger = logging.getLogger(__name__)

T = TypeVar('T')

REJECTED_STATUS_CODES = {400, 401, 403, 404, 405, 409, 410, 413, 415, 422}


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention used by every stored datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds") + "Z"


def format_duration(seconds: float) -> str:
    """Render a duration for log lines, e.g. ``2m 30s`` or ``1h 5m``."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def async_retry(
    attempts: int = 3,
    max_wait: float = 10.0,
    retry_on: tuple = (ProviderUnavailable,),
):
    """
    Retry an idempotent provider read on transient failures.

    Only reads go through this; anything that creates remote state is left
    to the retry coordinator so a lost response is never replayed blindly.
    The final exception is re-raised unchanged.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        retrying = retry(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(min=1, max=max_wait),
            retry=retry_if_exception_type(retry_on),
            before_sleep=before_sleep_log(_retry_logger, logging.WARNING),
            reraise=True,
        )
        return retrying(func)

    return decorator


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds. HTTP dates are ignored."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def handle_http_error(error: Exception, provider: str, operation: str) -> ProviderError:
    """
    Translate an httpx failure into the pipeline's provider error taxonomy.

    Args:
        error: httpx exception raised by the call
        provider: Provider name used in metrics and messages
        operation: Operation that failed

    Returns:
        The matching ProviderError, ready to be raised
    """
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        provider_requests_total.labels(
            provider=provider,
            operation=operation,
            status=f"error_{status_code}"
        ).inc()
        error_text = error.response.text[:500] if error.response.text else "No details"
        message = f"{provider} {operation} failed: {status_code} - {error_text}"

        if status_code == 429:
            record_error("ProviderThrottled", provider)
            return ProviderThrottled(
                message,
                retry_after=parse_retry_after(error.response.headers.get("Retry-After")),
                provider=provider,
            )
        if status_code in REJECTED_STATUS_CODES:
            record_error("ProviderRejected", provider)
            return ProviderRejected(message, status_code=status_code, provider=provider)
        record_error("ProviderUnavailable", provider)
        return ProviderUnavailable(message, status_code=status_code, provider=provider)

    if isinstance(error, httpx.TimeoutException):
        record_error("ProviderTimeout", provider)
        provider_requests_total.labels(provider=provider, operation=operation, status="timeout").inc()
        return ProviderTimeout(f"Timeout in {provider} {operation}", provider=provider)

    record_error(type(error).__name__, provider)
    provider_requests_total.labels(provider=provider, operation=operation, status="error").inc()
    return ProviderUnavailable(f"{provider} {operation} failed: {error}", provider=provider)


def safe_dict_get(d: Any, *path: Any, default: Any = None) -> Any:
    """Walk ``path`` (dict keys or list indexes) through a provider payload."""
    node = d
    for step in path:
        try:
            node = node[step]
        except (KeyError, IndexError, TypeError):
            return default
    return node


def extract_json_object(text: str) -> Optional[Any]:
    """
    Recover a JSON object from an LLM response.

    Tries the whole text first, then the first balanced {...} block,
    skipping braces inside string literals. Truncated output yields None.

    Args:
        text: Raw model output

    Returns:
        Parsed object or None
    """
    if not text:
        return None

    stripped = text.strip()
    try:
        return json.loads(stripped)
    except ValueError:
        pass

    start = stripped.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(stripped)):
            char = stripped[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    try:
                        return json.loads(stripped[start:index + 1])
                    except ValueError:
                        break
        start = stripped.find("{", start + 1)
    return None
