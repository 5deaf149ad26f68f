"""
Meeting Pipeline - HTTP ingress and query API.

Provider and bus notifications are validated and enqueued; the worker does
the actual stage work. Read-only meeting views, health and metrics are
exposed alongside.
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel

from meeting_pipeline.config import load_settings
from meeting_pipeline.context import PipelineContext, build_context
from meeting_pipeline.db import create_tables
from meeting_pipeline.events import parse_event
from meeting_pipeline.exceptions import NotFound, PreconditionFailed, ValidationError
from meeting_pipeline.logging_config import get_logger, setup_logging
from meeting_pipeline.monitoring import get_metrics

logger = get_logger(__name__)


# ============================================
# RESPONSE MODELS
# ============================================

class EventAccepted(BaseModel):
    """Response for an enqueued event."""
    eventId: int
    detailType: str
    meetingId: Optional[str] = None


class MeetingList(BaseModel):
    """List of meeting records."""
    meetings: List[Dict[str, Any]]
    total: int


class ReplayResult(BaseModel):
    """Dead-letter replay response."""
    replayed: int


class HealthCheck(BaseModel):
    """Health check response."""
    status: str
    database: str
    pending_events: int
    llm_configured: bool
    jira_configured: bool
    timestamp: str


# ============================================
# DEPENDENCY INJECTION
# ============================================

def get_context(request: Request) -> PipelineContext:
    """Pipeline context built at startup."""
    ctx = getattr(request.app.state, "ctx", None)
    if ctx is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline is not initialized"
        )
    return ctx


# ============================================
# ROUTES
# ============================================

router = APIRouter()


@router.post("/events", response_model=EventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    raw: Dict[str, Any] = Body(...),
    ctx: PipelineContext = Depends(get_context),
):
    """Validate a bus message and enqueue it for the worker."""
    try:
        event = parse_event(raw)
    except ValidationError as e:
        logger.warning("ingest_rejected", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    event_id = await ctx.bus.publish(event)
    return EventAccepted(eventId=event_id, detailType=event.detail_type, meetingId=event.meeting_id)


@router.get("/meetings/{meeting_id}")
async def get_meeting(meeting_id: str, ctx: PipelineContext = Depends(get_context)):
    """Get one meeting record."""
    try:
        record = await ctx.store.get(meeting_id)
    except NotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return record.to_dict()


@router.get("/meetings", response_model=MeetingList)
async def list_meetings(
    limit: int = Query(50, ge=1, le=500),
    status_filter: Optional[str] = Query(None, alias="status"),
    ctx: PipelineContext = Depends(get_context),
):
    """List recent meetings, optionally filtered by status."""
    records = await ctx.store.list(limit=limit, status=status_filter)
    return MeetingList(meetings=[record.to_dict() for record in records], total=len(records))


@router.post("/meetings/{meeting_id}/reset-extraction")
async def reset_extraction(meeting_id: str, ctx: PipelineContext = Depends(get_context)):
    """Clear extracted tasks so the meeting can be extracted again."""
    try:
        record = await ctx.store.reset_extraction(meeting_id)
    except NotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PreconditionFailed as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return record.to_dict()


@router.post("/dead-letters/replay", response_model=ReplayResult)
async def replay_dead_letters(
    detail_type: Optional[str] = Query(None, alias="detailType"),
    ctx: PipelineContext = Depends(get_context),
):
    """Re-queue dead-lettered events."""
    replayed = await ctx.bus.replay_dead_letters(detail_type)
    return ReplayResult(replayed=replayed)


@router.get("/health", response_model=HealthCheck)
async def health_check(ctx: PipelineContext = Depends(get_context)):
    """Health check endpoint for monitoring."""
    try:
        pending = await ctx.bus.pending_count()
        db_status = "connected"
    except Exception as e:
        logger.warning("health_database_error", error=str(e))
        pending = 0
        db_status = "disconnected"

    return HealthCheck(
        status="healthy" if db_status == "connected" else "degraded",
        database=db_status,
        pending_events=pending,
        llm_configured=ctx.llm is not None,
        jira_configured=ctx.jira is not None,
        timestamp=datetime.now().isoformat()
    )


@router.get("/metrics")
async def metrics():
    """Prometheus metrics."""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


# ============================================
# APPLICATION FACTORY
# ============================================

def create_app(ctx: Optional[PipelineContext] = None) -> FastAPI:
    """
    Create the FastAPI app.

    Args:
        ctx: Prebuilt context; when omitted one is built from the environment
             at startup and disposed on shutdown
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if ctx is not None:
            yield
            return

        settings = load_settings()
        setup_logging(settings.debug)
        app.state.ctx = build_context(settings)
        await create_tables(app.state.ctx.engine)
        logger.info("api_started", host=settings.host, port=settings.port)
        try:
            yield
        finally:
            await app.state.ctx.close()

    app = FastAPI(
        title="Meeting Pipeline",
        description="Meeting recordings to transcripts, action items and Jira issues",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    if ctx is not None:
        app.state.ctx = ctx
    return app


def main() -> None:
    """Run the API with uvicorn."""
    settings = load_settings()
    uvicorn.run(
        "meeting_pipeline.api:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )


if __name__ == "__main__":
    main()
