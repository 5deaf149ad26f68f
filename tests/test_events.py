"""
Tests for event parsing.
"""
import json
import pytest

from meeting_pipeline.events import (
    ObjectCreated,
    TaskExtractionCompleted,
    TasksReadyForCreation,
    TranscriptionCompleted,
    TranscriptionJobStateChange,
    parse_event,
)
from meeting_pipeline.exceptions import UnrecognizedEvent, ValidationError
from meeting_pipeline.schemas import TranscriptionJobStatus


@pytest.mark.unit
class TestParseEvent:
    """Test mapping raw bus messages onto event variants."""

    def test_object_created(self):
        """Test the object store notification is recognized."""
        event = parse_event({
            "source": "object.store",
            "detailType": "Object Created",
            "detail": {"container": "recordings", "key": "meetings/m-1/call.mp3", "size": 2048},
        })

        assert isinstance(event, ObjectCreated)
        assert event.detail.key == "meetings/m-1/call.mp3"
        assert event.meeting_id is None

    def test_hyphenated_detail_type_alias(self):
        """Test the 'detail-type' spelling is accepted."""
        event = parse_event({
            "source": "meeting.app",
            "detail-type": "Transcription Completed",
            "detail": {"meetingId": "m-1"},
        })

        assert isinstance(event, TranscriptionCompleted)
        assert event.meeting_id == "m-1"
        assert event.detail.retry_attempt == 0

    def test_detail_as_json_string(self):
        """Test a JSON-encoded detail is decoded."""
        event = parse_event({
            "source": "meeting.app",
            "detailType": "Task Extraction Completed",
            "detail": json.dumps({"meetingId": "m-2", "retryAttempt": 2}),
        })

        assert isinstance(event, TaskExtractionCompleted)
        assert event.detail.retry_attempt == 2

    def test_job_state_change_status_normalized(self):
        """Test provider job status casing is normalized."""
        event = parse_event({
            "source": "transcription.provider",
            "detailType": "Transcription Job State Change",
            "detail": {"jobId": "job-1", "status": "completed"},
        })

        assert isinstance(event, TranscriptionJobStateChange)
        assert event.detail.status == TranscriptionJobStatus.COMPLETED

    def test_unknown_pair_rejected(self):
        """Test an unknown (source, detailType) pair is rejected."""
        with pytest.raises(UnrecognizedEvent):
            parse_event({"source": "meeting.app", "detailType": "Meeting Archived", "detail": {}})

    def test_known_detail_type_from_wrong_source_rejected(self):
        """Test the pair, not the detail type alone, selects the variant."""
        with pytest.raises(UnrecognizedEvent):
            parse_event({"source": "object.store", "detailType": "Transcription Completed", "detail": {}})

    def test_missing_meeting_id_rejected(self):
        """Test a malformed detail is a validation error."""
        with pytest.raises(ValidationError):
            parse_event({"source": "meeting.app", "detailType": "Transcription Completed", "detail": {}})

    def test_empty_task_list_rejected(self):
        """Test creation events must carry at least one task."""
        with pytest.raises(ValidationError):
            parse_event({
                "source": "meeting.app",
                "detailType": "Tasks Ready for Creation",
                "detail": {"meetingId": "m-1", "tasks": []},
            })

    def test_non_object_rejected(self):
        """Test non-dict messages are rejected."""
        with pytest.raises(ValidationError):
            parse_event(["not", "an", "event"])


@pytest.mark.unit
class TestEventSerialization:
    """Test event wire form and re-delivery copies."""

    def test_to_message_round_trips(self):
        """Test a published message parses back to the same variant."""
        event = TasksReadyForCreation(detail={
            "meeting_id": "m-1",
            "tasks": [{"title": "Draft the release notes", "assignee": "Sarah"}],
        })

        message = event.to_message()
        parsed = parse_event(message)

        assert message["detailType"] == "Tasks Ready for Creation"
        assert message["detail"]["tasks"][0]["assigneeId"] is None
        assert parsed.detail.tasks[0].title == "Draft the release notes"

    def test_redelivery_stamps_attempt(self):
        """Test a re-delivery carries the new attempt counter and queuedAt."""
        event = TranscriptionCompleted(detail={"meeting_id": "m-1"})

        redelivered = event.redelivery(1)

        assert redelivered.detail.retry_attempt == 1
        assert redelivered.detail.queued_at is not None
        assert event.detail.retry_attempt == 0

    def test_redelivery_requires_retryable_event(self):
        """Test non-retryable events cannot be re-delivered with an attempt."""
        event = ObjectCreated(detail={"container": "recordings", "key": "a.mp3"})

        with pytest.raises(TypeError):
            event.redelivery(1)
