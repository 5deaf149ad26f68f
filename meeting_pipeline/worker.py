"""
Pipeline worker: polls the event bus and dispatches due events to stages.

Each cycle:
1. Leases up to `worker_batch_size` due events
2. Dispatches them concurrently
3. Acks, dead-letters or releases each according to the stage response
"""
import argparse
import asyncio
import time
from typing import Any, Dict, Optional

from meeting_pipeline.config import Settings, load_settings
from meeting_pipeline.context import PipelineContext, build_context
from meeting_pipeline.db import create_tables
from meeting_pipeline.dispatcher import ACK, DEAD_LETTER, EventDispatcher, StageResult
from meeting_pipeline.logging_config import get_logger, setup_logging
from meeting_pipeline.models import PipelineEventRecord
from meeting_pipeline.monitoring import record_error, track_time, worker_batch_duration
from meeting_pipeline.utils import format_duration

logger = get_logger(__name__)


class PipelineWorker:
    """Long-running consumer of the pipeline event bus."""

    def __init__(self, ctx: PipelineContext, dispatcher: Optional[EventDispatcher] = None):
        self.ctx = ctx
        self.dispatcher = dispatcher or EventDispatcher(ctx)
        self._stopping = asyncio.Event()

    def redelivery_delay(self, deliveries: int) -> float:
        """Delay before a released event is offered again."""
        settings = self.ctx.settings
        delay_ms = min(2 ** deliveries * settings.retry_backoff_base_ms, settings.retry_backoff_cap_ms)
        return delay_ms / 1000

    async def process_event(self, record: PipelineEventRecord) -> StageResult:
        """
        Dispatch one leased event and settle it on the bus.

        Args:
            record: Leased outbox row

        Returns:
            The stage result
        """
        bus = self.ctx.bus
        result = await self.dispatcher.dispatch(record.to_message())
        action = result.bus_action

        if action == ACK:
            await bus.ack(record.id)
        elif action == DEAD_LETTER:
            await bus.dead_letter(record.id, result.error or "Rejected by stage")
        else:
            await bus.release(
                record.id,
                result.error or f"Stage returned {result.status_code}",
                delay_seconds=self.redelivery_delay(record.deliveries),
            )
        return result

    @track_time(worker_batch_duration)
    async def run_once(self) -> Dict[str, Any]:
        """
        Run a single poll-and-dispatch cycle.

        Returns:
            Cycle statistics
        """
        stats = {
            "claimed": 0,
            "acked": 0,
            "dead_lettered": 0,
            "released": 0,
            "errors_count": 0,
        }

        start_time = time.time()
        records = await self.ctx.bus.claim_due(self.ctx.settings.worker_batch_size)
        stats["claimed"] = len(records)
        if not records:
            return stats

        outcomes = await asyncio.gather(
            *(self.process_event(record) for record in records),
            return_exceptions=True,
        )

        for record, outcome in zip(records, outcomes):
            if isinstance(outcome, Exception):
                # Lease expiry makes the event visible again
                stats["errors_count"] += 1
                record_error(type(outcome).__name__, "worker")
                logger.error("event_processing_error", event_id=record.id, error=str(outcome))
                continue
            if outcome.bus_action == ACK:
                stats["acked"] += 1
            elif outcome.bus_action == DEAD_LETTER:
                stats["dead_lettered"] += 1
            else:
                stats["released"] += 1

        logger.info("worker_cycle_complete", duration=format_duration(time.time() - start_time), **stats)
        return stats

    async def run_forever(self) -> None:
        """Poll until stop() is called; sleeps only when the bus is idle."""
        poll_interval = self.ctx.settings.worker_poll_interval
        logger.info("worker_started", batch_size=self.ctx.settings.worker_batch_size, poll_interval=poll_interval)

        while not self._stopping.is_set():
            try:
                stats = await self.run_once()
            except Exception as e:
                record_error(type(e).__name__, "worker")
                logger.error("worker_cycle_failed", error=str(e), exc_info=True)
                stats = {"claimed": 0}

            if stats["claimed"] == 0:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass

        logger.info("worker_stopped")

    def stop(self) -> None:
        self._stopping.set()


async def run_worker(settings: Settings, once: bool = False) -> None:
    """Build the context, ensure tables exist and run the worker."""
    ctx = build_context(settings)
    try:
        await create_tables(ctx.engine)
        worker = PipelineWorker(ctx)
        if once:
            stats = await worker.run_once()
            logger.info("worker_single_cycle_complete", **stats)
            return
        await worker.run_forever()
    finally:
        await ctx.close()


def main() -> None:
    """Main entry point for the pipeline worker."""
    parser = argparse.ArgumentParser(description="Meeting pipeline event worker")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit")
    args = parser.parse_args()

    settings = load_settings()
    setup_logging(settings.debug)

    logger.info("worker_starting", once=args.once)
    try:
        asyncio.run(run_worker(settings, once=args.once))
    except KeyboardInterrupt:
        logger.info("worker_interrupted")


if __name__ == "__main__":
    main()
