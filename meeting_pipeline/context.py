"""
Process-wide pipeline context: settings, store, bus and provider clients.

Built once per process and handed to every stage invocation; nothing in the
package reads module-level globals.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from meeting_pipeline.config import Settings
from meeting_pipeline.db import create_engine, create_session_factory
from meeting_pipeline.event_bus import EventBus
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.rate_limiters import RateLimiters
from meeting_pipeline.retry import RetryCoordinator
from meeting_pipeline.services import JiraService, LLMService, ObjectStore, TranscriptionService
from meeting_pipeline.state_machine import MeetingStore

logger = get_logger(__name__)


@dataclass
class PipelineContext:
    settings: Settings
    store: MeetingStore
    bus: EventBus
    coordinator: RetryCoordinator
    rate_limiters: RateLimiters
    object_store: ObjectStore
    transcription: TranscriptionService
    llm: Optional[LLMService] = None
    jira: Optional[JiraService] = None
    engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()


def build_context(
    settings: Settings,
    session_factory: Optional[async_sessionmaker] = None,
    engine: Optional[AsyncEngine] = None,
) -> PipelineContext:
    """
    Wire the pipeline from settings.

    Args:
        settings: Loaded settings
        session_factory: Existing session factory; created from settings when omitted
        engine: Engine owning the session factory, disposed by close()

    Returns:
        PipelineContext
    """
    if session_factory is None:
        engine = engine or create_engine(settings)
        session_factory = create_session_factory(engine)

    store = MeetingStore(session_factory)
    bus = EventBus(
        session_factory,
        visibility_timeout=settings.event_visibility_timeout,
        max_deliveries=settings.event_max_deliveries,
    )
    rate_limiters = RateLimiters(settings)
    timeout = settings.provider_timeout_seconds

    llm = None
    if settings.is_llm_configured:
        llm = LLMService(
            settings.llm_api_key,
            settings.llm_api_url,
            settings.llm_model,
            timeout=timeout,
            limiter=rate_limiters.acquire_llm_limit,
        )
    else:
        logger.warning("llm_not_configured", message="Task extraction will use keyword fallback")

    jira = None
    if settings.is_jira_configured:
        jira = JiraService(
            settings.jira_base_url,
            settings.jira_email,
            settings.jira_api_token,
            project_key=settings.jira_project_key,
            issue_type=settings.jira_issue_type,
            timeout=timeout,
            limiter=rate_limiters.acquire_jira_limit,
        )
    else:
        logger.warning("jira_not_configured", message="Reconciliation and sync will fail")

    return PipelineContext(
        settings=settings,
        store=store,
        bus=bus,
        coordinator=RetryCoordinator(store, bus, settings),
        rate_limiters=rate_limiters,
        object_store=ObjectStore(settings.object_store_url, settings.object_store_token, timeout=timeout),
        transcription=TranscriptionService(
            settings.transcription_api_url,
            settings.transcription_api_key,
            settings.transcription_language,
            timeout=timeout,
            limiter=rate_limiters.acquire_transcription_limit,
        ),
        llm=llm,
        jira=jira,
        engine=engine,
    )
