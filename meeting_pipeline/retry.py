"""
Retry/backoff coordinator for calls to rate-limited providers.

Two layers:
- run(): a bounded loop of immediate attempts with exponential delay, sized
  by the retryAttempt the triggering event carries.
- defer(): once throttling outlasts the immediate budget, persist the stage
  as throttled and publish a single re-delivery scheduled after a cooldown.
  The bus's delayed delivery is the retry clock; nothing sleeps past the
  immediate loop.
"""
import asyncio
from datetime import timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from meeting_pipeline.config import Settings
from meeting_pipeline.event_bus import EventBus
from meeting_pipeline.events import BaseEvent
from meeting_pipeline.exceptions import (
    ProviderRejected,
    ProviderThrottled,
    ProviderTimeout,
    ValidationError,
)
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.models import MeetingRecord
from meeting_pipeline.monitoring import throttle_deferrals_total
from meeting_pipeline.schemas import StageStatus
from meeting_pipeline.state_machine import MeetingStore
from meeting_pipeline.utils import utcnow

logger = get_logger(__name__)

T = TypeVar("T")

# Errors that retrying cannot fix
FATAL_ERRORS = (ProviderRejected, ValidationError)

TASK_GENERATION = "task_generation"
JIRA_PROCESSING = "jira_processing"


class RetryCoordinator:
    """Shared retry policy for stages calling external providers."""

    def __init__(
        self,
        store: MeetingStore,
        bus: EventBus,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.bus = bus
        self.settings = settings
        self._sleep = sleep

    def immediate_attempts(self, retry_attempt: int) -> int:
        """Later re-deliveries get fewer immediate attempts, never fewer than one."""
        return max(self.settings.max_immediate_attempts - retry_attempt, 1)

    def backoff_delay(self, retry_attempt: int, local_attempt: int) -> float:
        """Seconds to wait after local attempt `local_attempt` fails."""
        delay_ms = (2 ** (retry_attempt + 1)) * self.settings.retry_backoff_base_ms * local_attempt
        return min(delay_ms, self.settings.retry_backoff_cap_ms) / 1000

    def cooldown(self, retry_attempt: int) -> float:
        """Seconds before a throttled stage may call its provider again."""
        cooldown_ms = (2 ** retry_attempt) * self.settings.throttle_cooldown_base_ms
        return min(cooldown_ms, self.settings.throttle_cooldown_cap_ms) / 1000

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        retry_attempt: int = 0,
        operation: str = "provider_call",
    ) -> T:
        """
        Call a provider with bounded immediate retries.

        Args:
            call: Zero-argument coroutine factory performing one provider call
            retry_attempt: Re-delivery counter from the triggering event
            operation: Name used in logs

        Returns:
            The call's result

        Raises:
            ProviderRejected / ValidationError: Immediately, without retrying
            ProviderThrottled: Throttled on every immediate attempt; caller should defer()
            Exception: The last transient error once the budget is spent
        """
        max_attempts = self.immediate_attempts(retry_attempt)
        timeout = self.settings.provider_timeout_seconds

        for attempt in range(1, max_attempts + 1):
            try:
                try:
                    return await asyncio.wait_for(call(), timeout=timeout)
                except asyncio.TimeoutError:
                    raise ProviderTimeout(f"{operation} exceeded {timeout}s")
            except FATAL_ERRORS as e:
                logger.error("provider_call_rejected", operation=operation, attempt=attempt, error=str(e))
                raise
            except Exception as e:
                throttled = isinstance(e, ProviderThrottled)
                if attempt >= max_attempts:
                    logger.error(
                        "provider_call_exhausted",
                        operation=operation,
                        attempts=max_attempts,
                        retry_attempt=retry_attempt,
                        throttled=throttled,
                        error=str(e),
                    )
                    raise
                delay = self.backoff_delay(retry_attempt, attempt)
                logger.warning(
                    "provider_call_retrying",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    throttled=throttled,
                    error=str(e),
                )
                await self._sleep(delay)

    async def pause(self, seconds: float) -> None:
        """Fixed pacing delay between sequential provider writes."""
        if seconds > 0:
            await self._sleep(seconds)

    def remaining_cooldown(self, record: MeetingRecord, stage: str) -> float:
        """
        Seconds left in a throttling cooldown for `stage` (0 when not throttled).
        """
        status = getattr(record, f"{stage}_status")
        if status != StageStatus.THROTTLED.value or record.retry_after is None:
            return 0.0
        return max((record.retry_after - utcnow()).total_seconds(), 0.0)

    async def defer(self, event: BaseEvent, stage: str, error: Exception) -> int:
        """
        Persist the stage as throttled and schedule exactly one re-delivery.

        Args:
            event: Triggering event (must carry a retryable detail)
            stage: Record field prefix, TASK_GENERATION or JIRA_PROCESSING
            error: The throttling error that exhausted the immediate budget

        Returns:
            Outbox id of the re-delivery event
        """
        retry_attempt = event.detail.retry_attempt
        cooldown = self.cooldown(retry_attempt)
        provider_hint: Optional[float] = getattr(error, "retry_after", None)
        if provider_hint:
            cooldown = max(cooldown, provider_hint)

        now = utcnow()
        await self.store.update_fields(event.meeting_id, {
            f"{stage}_status": StageStatus.THROTTLED,
            f"{stage}_error": str(error),
            f"{stage}_timestamp": now,
            "retry_after": now + timedelta(seconds=cooldown),
        })
        event_id = await self.bus.publish(event.redelivery(retry_attempt + 1), delay_seconds=cooldown)

        throttle_deferrals_total.labels(stage=stage, reason="exhausted").inc()
        logger.warning(
            "stage_throttled_deferred",
            meeting_id=event.meeting_id,
            stage=stage,
            retry_attempt=retry_attempt + 1,
            cooldown_seconds=cooldown,
        )
        return event_id

    async def requeue_for_cooldown(self, event: BaseEvent, stage: str, remaining: float) -> int:
        """Re-publish an event that arrived inside its cooldown window, without calling the provider."""
        event_id = await self.bus.publish(event.redelivery(event.detail.retry_attempt), delay_seconds=remaining)
        throttle_deferrals_total.labels(stage=stage, reason="cooldown").inc()
        logger.info(
            "stage_in_cooldown_requeued",
            meeting_id=event.meeting_id,
            stage=stage,
            remaining_seconds=round(remaining, 1),
        )
        return event_id
