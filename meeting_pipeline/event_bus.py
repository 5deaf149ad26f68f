"""
Durable at-least-once event bus backed by an outbox table.

Delivery semantics:
- publish() with a delay makes the event invisible until available_at; this
  is the clock the retry/backoff coordinator schedules re-delivery on.
- claim_due() leases events by pushing available_at forward by the
  visibility timeout. An event that is never acked becomes visible again.
- After max_deliveries leases an event is dead-lettered instead of delivered.
"""
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from meeting_pipeline.db import get_db_session
from meeting_pipeline.events import PipelineEvent
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.models import PipelineEventRecord
from meeting_pipeline.monitoring import events_dead_lettered_total, events_published_total
from meeting_pipeline.utils import utcnow

logger = get_logger(__name__)

PENDING = "pending"
DELIVERED = "delivered"
DEAD = "dead"


class EventBus:
    """Publish, lease and acknowledge pipeline events."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        visibility_timeout: int = 300,
        max_deliveries: int = 5,
    ):
        self._session_factory = session_factory
        self.visibility_timeout = visibility_timeout
        self.max_deliveries = max_deliveries

    async def publish(self, event: PipelineEvent, delay_seconds: float = 0) -> int:
        """
        Publish an event, optionally delayed.

        Args:
            event: Parsed event variant
            delay_seconds: Seconds before the event becomes deliverable

        Returns:
            Outbox id of the event
        """
        now = utcnow()
        record = PipelineEventRecord(
            source=event.source,
            detail_type=event.detail_type,
            detail=event.detail.to_json_dict(),
            state=PENDING,
            available_at=now + timedelta(seconds=max(delay_seconds, 0)),
            created_at=now,
            updated_at=now,
        )
        async with get_db_session(self._session_factory) as session:
            session.add(record)
            await session.flush()
            event_id = record.id

        events_published_total.labels(detail_type=event.detail_type).inc()
        logger.info(
            "event_published",
            event_id=event_id,
            detail_type=event.detail_type,
            meeting_id=event.meeting_id,
            delay_seconds=delay_seconds,
        )
        return event_id

    async def claim_due(self, limit: int = 10) -> List[PipelineEventRecord]:
        """
        Lease up to `limit` deliverable events.

        Events that already used up their deliveries are dead-lettered here.
        """
        now = utcnow()
        claimed = []
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                select(PipelineEventRecord)
                .where(
                    PipelineEventRecord.state == PENDING,
                    PipelineEventRecord.available_at <= now,
                )
                .order_by(PipelineEventRecord.available_at, PipelineEventRecord.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            for record in result.scalars().all():
                if record.deliveries >= self.max_deliveries:
                    record.state = DEAD
                    record.last_error = record.last_error or "Maximum deliveries exceeded"
                    record.updated_at = now
                    events_dead_lettered_total.labels(detail_type=record.detail_type).inc()
                    logger.error("event_dead_lettered", event_id=record.id, detail_type=record.detail_type)
                    continue
                record.deliveries += 1
                record.available_at = now + timedelta(seconds=self.visibility_timeout)
                record.updated_at = now
                claimed.append(record)
        return claimed

    async def ack(self, event_id: int) -> None:
        """Mark an event as delivered."""
        await self._set_state(event_id, DELIVERED)

    async def release(self, event_id: int, error: str, delay_seconds: float = 0) -> None:
        """Make a leased event deliverable again after `delay_seconds`."""
        now = utcnow()
        async with get_db_session(self._session_factory) as session:
            await session.execute(
                update(PipelineEventRecord)
                .where(PipelineEventRecord.id == event_id, PipelineEventRecord.state == PENDING)
                .values(
                    available_at=now + timedelta(seconds=max(delay_seconds, 0)),
                    last_error=error,
                    updated_at=now,
                )
            )
        logger.warning("event_released", event_id=event_id, error=error, delay_seconds=delay_seconds)

    async def dead_letter(self, event_id: int, error: str) -> None:
        """Stop delivering an event; it stays in the table for inspection and replay."""
        async with get_db_session(self._session_factory) as session:
            record = await session.get(PipelineEventRecord, event_id)
            if record is None:
                return
            record.state = DEAD
            record.last_error = error
            record.updated_at = utcnow()
            detail_type = record.detail_type
        events_dead_lettered_total.labels(detail_type=detail_type).inc()
        logger.error("event_dead_lettered", event_id=event_id, detail_type=detail_type, error=error)

    async def replay_dead_letters(self, detail_type: Optional[str] = None) -> int:
        """
        Re-queue dead-lettered events with a fresh delivery budget.

        Returns:
            Number of events re-queued
        """
        now = utcnow()
        stmt = (
            update(PipelineEventRecord)
            .where(PipelineEventRecord.state == DEAD)
            .values(state=PENDING, deliveries=0, available_at=now, updated_at=now)
        )
        if detail_type:
            stmt = stmt.where(PipelineEventRecord.detail_type == detail_type)
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(stmt)
            count = result.rowcount
        logger.info("dead_letters_replayed", count=count, detail_type=detail_type)
        return count

    async def pending_count(self) -> int:
        async with get_db_session(self._session_factory) as session:
            result = await session.execute(
                select(func.count()).select_from(PipelineEventRecord).where(PipelineEventRecord.state == PENDING)
            )
            return result.scalar_one()

    async def _set_state(self, event_id: int, state: str) -> None:
        async with get_db_session(self._session_factory) as session:
            await session.execute(
                update(PipelineEventRecord)
                .where(PipelineEventRecord.id == event_id)
                .values(state=state, updated_at=utcnow())
            )
