"""
Tests for the event dispatcher.
"""
import pytest

from meeting_pipeline.dispatcher import ACK, DEAD_LETTER, REDELIVER, EventDispatcher, StageResult
from meeting_pipeline.exceptions import ProviderRejected
from meeting_pipeline.schemas import TranscriptionJob


def app_event(detail_type, **detail):
    return {"source": "meeting.app", "detailType": detail_type, "detail": detail}


@pytest.mark.unit
class TestStageResult:
    """Test status code to bus action mapping."""

    @pytest.mark.parametrize("status_code,action", [
        (200, ACK),
        (422, ACK),
        (502, ACK),
        (400, DEAD_LETTER),
        (404, REDELIVER),
        (500, REDELIVER),
    ])
    def test_bus_action(self, status_code, action):
        assert StageResult(status_code).bus_action == action


@pytest.mark.unit
class TestEventDispatcher:
    """Test routing and error conversion."""

    @pytest.mark.asyncio
    async def test_unknown_event_rejected(self, ctx):
        result = await EventDispatcher(ctx).dispatch({"source": "someone.else", "detailType": "Hello", "detail": {}})

        assert result.status_code == 400
        assert "Unrecognized event" in result.error

    @pytest.mark.asyncio
    async def test_malformed_detail_rejected(self, ctx):
        result = await EventDispatcher(ctx).dispatch(app_event("Transcription Completed", retryAttempt=-1))

        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_meeting_is_404(self, ctx):
        result = await EventDispatcher(ctx).dispatch(app_event("Transcription Completed", meetingId="nope"))

        assert result.status_code == 404
        assert result.bus_action == REDELIVER

    @pytest.mark.asyncio
    async def test_missing_transcript_marks_failed(self, ctx, seed_meeting, store):
        await seed_meeting(status="transcribed")

        result = await EventDispatcher(ctx).dispatch(app_event("Transcription Completed", meetingId="meeting-1"))

        assert result.status_code == 422
        assert result.bus_action == ACK
        record = await store.get("meeting-1")
        assert record.status == "failed"
        assert record.task_generation_status == "failed"
        assert record.error_message.startswith("task_extraction failed: No transcript found")

    @pytest.mark.asyncio
    async def test_provider_rejection_marks_failed(self, ctx, mock_transcription, seed_meeting, store):
        await seed_meeting()
        mock_transcription.submit.side_effect = ProviderRejected("unsupported media", status_code=400, provider="transcription")

        result = await EventDispatcher(ctx).dispatch(app_event(
            "Meeting Ready for Transcription",
            meetingId="meeting-1",
            container="recordings",
            key="meetings/meeting-1/standup.mp3",
            fileName="standup.mp3",
        ))

        assert result.status_code == 502
        assert result.body["meetingId"] == "meeting-1"
        record = await store.get("meeting-1")
        assert record.status == "failed"
        assert record.transcription_job_status == "FAILED"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_redelivered(self, ctx, mock_object_store, seed_meeting, store):
        await seed_meeting(status="transcribing", transcription_job_id="job-1", transcription_job_status="IN_PROGRESS")
        ctx.transcription.get_status.return_value = TranscriptionJob(
            job_id="job-1", status="COMPLETED", transcript_uri="store://recordings/t.json"
        )
        mock_object_store.download_uri.side_effect = RuntimeError("boom")

        result = await EventDispatcher(ctx).dispatch(app_event(
            "Transcription Status Check", meetingId="meeting-1", jobId="job-1", checkCount=0,
        ))

        assert result.status_code == 500
        assert result.bus_action == REDELIVER
        assert (await store.get("meeting-1")).status == "failed"

    @pytest.mark.asyncio
    async def test_stale_event_is_success_shaped_skip(self, ctx, seed_meeting):
        await seed_meeting(status="completed", full_transcript="x", extracted_tasks=[{"title": "t"}])

        result = await EventDispatcher(ctx).dispatch(app_event("Transcription Completed", meetingId="meeting-1"))

        assert result.status_code == 200
        assert result.body["outcome"] == "skipped"

    @pytest.mark.asyncio
    async def test_job_state_change_failure_uses_resolved_meeting(self, ctx, mock_transcription, seed_meeting, store):
        """Test failures on job-keyed events are recorded against the job's meeting."""
        await seed_meeting(status="transcribing", transcription_job_id="job-1", transcription_job_status="IN_PROGRESS")
        mock_transcription.get_status.side_effect = ProviderRejected("job gone", status_code=404, provider="transcription")

        result = await EventDispatcher(ctx).dispatch({
            "source": "transcription.provider",
            "detail-type": "Transcription Job State Change",
            "detail": {"jobId": "job-1", "status": "COMPLETED"},
        })

        assert result.status_code == 502
        assert result.body["meetingId"] == "meeting-1"
        assert (await store.get("meeting-1")).status == "failed"
