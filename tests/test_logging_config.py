"""
Tests for structured log context.
"""
import pytest
import structlog

from meeting_pipeline.logging_config import LogContext


@pytest.mark.unit
class TestLogContext:
    """Test binding of meeting fields."""

    def test_none_fields_not_bound(self):
        with LogContext(meeting_id="m-1", stage=None):
            bound = structlog.contextvars.get_contextvars()
            assert bound["meeting_id"] == "m-1"
            assert "stage" not in bound

        assert "meeting_id" not in structlog.contextvars.get_contextvars()

    def test_nested_context_restores_outer(self):
        with LogContext(meeting_id="m-1", stage="upload"):
            with LogContext(stage="transcription"):
                assert structlog.contextvars.get_contextvars()["stage"] == "transcription"
            assert structlog.contextvars.get_contextvars()["stage"] == "upload"
