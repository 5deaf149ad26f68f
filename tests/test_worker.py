"""
Tests for the pipeline worker.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy import select

from meeting_pipeline.db import get_db_session
from meeting_pipeline.dispatcher import EventDispatcher, StageResult
from meeting_pipeline.event_bus import DEAD, DELIVERED, PENDING
from meeting_pipeline.events import ObjectCreated, TranscriptionCompleted
from meeting_pipeline.models import PipelineEventRecord
from meeting_pipeline.schemas import ObjectMetadata
from meeting_pipeline.worker import PipelineWorker


async def event_states(session_factory):
    async with get_db_session(session_factory) as session:
        result = await session.execute(select(PipelineEventRecord).order_by(PipelineEventRecord.id))
        return [(record.detail_type, record.state) for record in result.scalars().all()]


def stub_dispatcher(result: StageResult):
    dispatcher = MagicMock(spec=EventDispatcher)
    dispatcher.dispatch = AsyncMock(return_value=result)
    return dispatcher


@pytest.mark.unit
class TestPipelineWorker:
    """Test poll, dispatch and settle cycles."""

    def test_redelivery_delay_is_capped(self, ctx):
        worker = PipelineWorker(ctx)

        assert worker.redelivery_delay(1) == 2.0
        assert worker.redelivery_delay(3) == 8.0
        assert worker.redelivery_delay(10) == 60.0

    @pytest.mark.asyncio
    async def test_empty_bus(self, ctx):
        stats = await PipelineWorker(ctx).run_once()

        assert stats["claimed"] == 0

    @pytest.mark.asyncio
    async def test_processed_event_is_acked(self, ctx, bus, mock_object_store, session_factory):
        """Test an upload event is handled end to end and the follow-up is published."""
        mock_object_store.get_metadata.return_value = ObjectMetadata(size=10, content_type="audio/mpeg")
        await bus.publish(ObjectCreated(detail={"container": "recordings", "key": "meetings/m-1/call.mp3"}))

        stats = await PipelineWorker(ctx).run_once()

        assert stats["claimed"] == 1
        assert stats["acked"] == 1
        assert await event_states(session_factory) == [
            ("Object Created", DELIVERED),
            ("Meeting Ready for Transcription", PENDING),
        ]

    @pytest.mark.asyncio
    async def test_rejected_event_is_dead_lettered(self, ctx, bus, session_factory):
        await bus.publish(TranscriptionCompleted(detail={"meeting_id": "meeting-1"}))
        worker = PipelineWorker(ctx, dispatcher=stub_dispatcher(StageResult(400, {"error": "bad detail"})))

        stats = await worker.run_once()

        assert stats["dead_lettered"] == 1
        assert await event_states(session_factory) == [("Transcription Completed", DEAD)]

    @pytest.mark.asyncio
    async def test_missing_meeting_is_released_with_delay(self, ctx, bus, session_factory):
        """Test a 404 puts the event back on the bus for a later delivery."""
        event_id = await bus.publish(TranscriptionCompleted(detail={"meeting_id": "not-yet-written"}))

        stats = await PipelineWorker(ctx).run_once()

        assert stats["released"] == 1
        async with get_db_session(session_factory) as session:
            record = await session.get(PipelineEventRecord, event_id)
            assert record.state == PENDING
            assert record.deliveries == 1
            assert record.last_error.startswith("Meeting not found")
            assert record.available_at > record.updated_at
        assert await bus.claim_due() == []

    @pytest.mark.asyncio
    async def test_dispatch_crash_counted_not_raised(self, ctx, bus):
        await bus.publish(TranscriptionCompleted(detail={"meeting_id": "meeting-1"}))
        dispatcher = MagicMock(spec=EventDispatcher)
        dispatcher.dispatch = AsyncMock(side_effect=RuntimeError("db down"))

        stats = await PipelineWorker(ctx, dispatcher=dispatcher).run_once()

        assert stats["errors_count"] == 1

    @pytest.mark.asyncio
    async def test_stop_ends_run_forever(self, ctx, test_settings):
        test_settings.worker_poll_interval = 0.01
        worker = PipelineWorker(ctx)
        worker.stop()

        await worker.run_forever()
