"""
Pytest configuration and fixtures.
"""
import pytest
from datetime import date
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from meeting_pipeline.config import Settings
from meeting_pipeline.context import PipelineContext
from meeting_pipeline.db import create_session_factory, create_tables, get_db_session
from meeting_pipeline.event_bus import EventBus, PENDING
from meeting_pipeline.models import MeetingRecord, PipelineEventRecord
from meeting_pipeline.rate_limiters import RateLimiters
from meeting_pipeline.retry import RetryCoordinator
from meeting_pipeline.services import JiraService, LLMService, ObjectStore, TranscriptionService
from meeting_pipeline.state_machine import MeetingStore


# ============================================
# TEST CONFIGURATION
# ============================================

@pytest.fixture
def test_settings():
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        object_store_url="http://store.test",
        transcription_api_url="http://transcribe.test/v1",
        llm_api_key="test-llm-key",
        llm_api_url="http://llm.test/v1/chat/completions",
        jira_base_url="https://example.atlassian.net",
        jira_email="bot@example.com",
        jira_api_token="test-jira-token",
        jira_project_key="CRM",
        jira_create_pacing_seconds=0,
        transcription_poll_interval=30,
        transcription_max_checks=5,
        debug=True,
    )


# ============================================
# DATABASE FIXTURES
# ============================================

@pytest.fixture
async def test_engine():
    """Create a test database engine using in-memory SQLite."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture
def store(session_factory):
    return MeetingStore(session_factory)


@pytest.fixture
def bus(session_factory):
    return EventBus(session_factory, visibility_timeout=300, max_deliveries=3)


# ============================================
# PIPELINE FIXTURES
# ============================================

@pytest.fixture
def fake_sleep():
    """Records retry delays instead of sleeping."""
    return AsyncMock()


@pytest.fixture
def coordinator(store, bus, test_settings, fake_sleep):
    return RetryCoordinator(store, bus, test_settings, sleep=fake_sleep)


@pytest.fixture
def mock_object_store():
    object_store = MagicMock(spec=ObjectStore)
    object_store.object_uri.side_effect = ObjectStore.object_uri
    return object_store


@pytest.fixture
def mock_transcription():
    return MagicMock(spec=TranscriptionService)


@pytest.fixture
def mock_llm():
    return MagicMock(spec=LLMService)


@pytest.fixture
def mock_jira():
    jira = MagicMock(spec=JiraService)
    jira.list_assignable_members.return_value = []
    jira.search_open_issues.return_value = []
    jira.issue_url.side_effect = lambda key: f"https://example.atlassian.net/browse/{key}"
    jira.build_issue_fields.side_effect = lambda task, meeting_id: {"summary": task.title}
    return jira


@pytest.fixture
def ctx(test_settings, store, bus, coordinator, mock_object_store, mock_transcription, mock_llm, mock_jira):
    """Pipeline context over the in-memory database with mocked providers."""
    return PipelineContext(
        settings=test_settings,
        store=store,
        bus=bus,
        coordinator=coordinator,
        rate_limiters=RateLimiters(test_settings),
        object_store=mock_object_store,
        transcription=mock_transcription,
        llm=mock_llm,
        jira=mock_jira,
    )


# ============================================
# HELPER FIXTURES
# ============================================

@pytest.fixture
def seed_meeting(store, session_factory):
    """Insert a meeting and force any further columns."""
    async def _seed(meeting_id: str = "meeting-1", **fields) -> MeetingRecord:
        await store.create({
            "meeting_id": meeting_id,
            "file_name": "standup.mp3",
            "storage_key": f"meetings/{meeting_id}/standup.mp3",
            "storage_container": "recordings",
            "file_size": 1024,
            "content_type": "audio/mpeg",
        })
        if fields:
            async with get_db_session(session_factory) as session:
                await session.execute(
                    update(MeetingRecord)
                    .where(MeetingRecord.meeting_id == meeting_id)
                    .values(**fields)
                )
        return await store.get(meeting_id)
    return _seed


@pytest.fixture
def pending_events(session_factory):
    """Events waiting on the bus, oldest first."""
    async def _pending(detail_type: str = None):
        async with get_db_session(session_factory) as session:
            query = select(PipelineEventRecord).where(PipelineEventRecord.state == PENDING)
            if detail_type:
                query = query.where(PipelineEventRecord.detail_type == detail_type)
            result = await session.execute(query.order_by(PipelineEventRecord.id))
            return list(result.scalars().all())
    return _pending


# ============================================
# MOCK DATA FIXTURES
# ============================================

@pytest.fixture
def today():
    return date(2024, 5, 15)  # a Wednesday


@pytest.fixture
def sample_tasks():
    return [
        {"title": "Send the Q3 budget draft to finance", "assignee": "Sarah", "priority": "high"},
        {"title": "Schedule the customer onboarding workshop", "assignee": "unassigned"},
        {"title": "Update the deployment runbook", "assignee": "Tom", "status": "in progress"},
    ]


@pytest.fixture
def transcript_artifact():
    """Speech-to-text JSON artifact with two speakers."""
    return {
        "results": {
            "transcripts": [{"transcript": "Sarah will send the report. Okay."}],
            "items": [
                {"type": "pronunciation", "start_time": "0.1", "speaker_label": "spk_0",
                 "alternatives": [{"content": "Sarah"}]},
                {"type": "pronunciation", "start_time": "0.4", "speaker_label": "spk_0",
                 "alternatives": [{"content": "will"}]},
                {"type": "pronunciation", "start_time": "0.6", "speaker_label": "spk_0",
                 "alternatives": [{"content": "send"}]},
                {"type": "pronunciation", "start_time": "0.8", "speaker_label": "spk_0",
                 "alternatives": [{"content": "the"}]},
                {"type": "pronunciation", "start_time": "0.9", "speaker_label": "spk_0",
                 "alternatives": [{"content": "report"}]},
                {"type": "punctuation", "alternatives": [{"content": "."}]},
                {"type": "pronunciation", "start_time": "1.5", "speaker_label": "spk_1",
                 "alternatives": [{"content": "Okay"}]},
                {"type": "punctuation", "alternatives": [{"content": "."}]},
            ],
        }
    }
