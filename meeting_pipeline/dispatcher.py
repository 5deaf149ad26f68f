"""
Event dispatcher: the stage boundary.

Parses a raw bus message into its event variant, runs the matching stage and
converts the outcome into a StageResult. Every exception a stage raises is
caught here; fatal ones are written into the record as `failed` before the
response is returned.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Type

from meeting_pipeline.context import PipelineContext
from meeting_pipeline.events import (
    BaseEvent,
    MeetingReadyForTranscription,
    ObjectCreated,
    TaskExtractionCompleted,
    TasksReadyForCreation,
    TasksReadyForUpdate,
    TranscriptionCompleted,
    TranscriptionJobStateChange,
    TranscriptionStatusCheck,
    parse_event,
)
from meeting_pipeline.exceptions import (
    ConfigurationError,
    MissingTranscript,
    NoTasksToSync,
    NotFound,
    PreconditionFailed,
    ProviderError,
    ValidationError,
)
from meeting_pipeline.logging_config import LogContext, get_logger
from meeting_pipeline.monitoring import record_error, stage_duration, stage_invocations_total
from meeting_pipeline.stages import (
    SKIPPED,
    JiraCreateStage,
    JiraUpdateStage,
    ReconciliationStage,
    Stage,
    TaskExtractionStage,
    TranscriptionJobStateChangeStage,
    TranscriptionStartStage,
    TranscriptionStatusCheckStage,
    UploadStage,
)

logger = get_logger(__name__)

ACK = "ack"
DEAD_LETTER = "dead_letter"
REDELIVER = "redeliver"

STAGES: Dict[Type[BaseEvent], Type[Stage]] = {
    ObjectCreated: UploadStage,
    MeetingReadyForTranscription: TranscriptionStartStage,
    TranscriptionStatusCheck: TranscriptionStatusCheckStage,
    TranscriptionJobStateChange: TranscriptionJobStateChangeStage,
    TranscriptionCompleted: TaskExtractionStage,
    TaskExtractionCompleted: ReconciliationStage,
    TasksReadyForCreation: JiraCreateStage,
    TasksReadyForUpdate: JiraUpdateStage,
}

FATAL_STAGE_ERRORS = (MissingTranscript, NoTasksToSync, ConfigurationError)


@dataclass
class StageResult:
    """Success- or failure-shaped response of one stage invocation."""

    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code == 200

    @property
    def bus_action(self) -> str:
        if self.status_code in (200, 422, 502):
            return ACK
        if self.status_code == 400:
            return DEAD_LETTER
        return REDELIVER

    @property
    def error(self) -> Optional[str]:
        return self.body.get("error")


class EventDispatcher:
    """Route parsed events to their stage."""

    def __init__(self, ctx: PipelineContext):
        self.ctx = ctx

    async def dispatch(self, raw: Dict[str, Any]) -> StageResult:
        """
        Handle one raw bus message.

        Args:
            raw: {source, detailType, detail} message

        Returns:
            StageResult; never raises
        """
        try:
            event = parse_event(raw)
        except ValidationError as e:
            record_error(type(e).__name__, "dispatcher")
            logger.warning("event_rejected", error=str(e), detail_type=raw.get("detailType") if isinstance(raw, dict) else None)
            return StageResult(400, {"error": str(e)})

        stage = STAGES[type(event)](self.ctx)
        with LogContext(meeting_id=event.meeting_id, detail_type=event.detail_type, stage=stage.NAME):
            return await self._run(stage, event)

    async def _run(self, stage: Stage, event: BaseEvent) -> StageResult:
        start_time = time.time()
        outcome = "error"
        try:
            body = await stage.handle(event)
            outcome = body.get("outcome", "processed")
            return StageResult(200, body)
        except ValidationError as e:
            outcome = "invalid"
            logger.warning("stage_validation_error", error=str(e))
            return StageResult(400, {"error": str(e)})
        except NotFound as e:
            outcome = "not_found"
            logger.warning("stage_meeting_not_found", error=str(e))
            return StageResult(404, {"error": str(e)})
        except PreconditionFailed as e:
            outcome = SKIPPED
            logger.info("stage_precondition_failed", error=str(e))
            return StageResult(200, stage.result(SKIPPED, e.meeting_id, str(e)))
        except FATAL_STAGE_ERRORS as e:
            outcome = "failed"
            return await self._fail(stage, event, e, 422)
        except ProviderError as e:
            outcome = "failed"
            return await self._fail(stage, event, e, 502)
        except Exception as e:
            outcome = "unexpected"
            logger.exception("stage_unexpected_error", error=str(e))
            return await self._fail(stage, event, e, 500)
        finally:
            stage_invocations_total.labels(stage=stage.NAME, outcome=outcome).inc()
            stage_duration.labels(stage=stage.NAME).observe(time.time() - start_time)

    async def _fail(self, stage: Stage, event: BaseEvent, error: Exception, status_code: int) -> StageResult:
        """Write `failed` into the record and build the failure response."""
        record_error(type(error).__name__, stage.NAME)
        meeting_id = stage.meeting_id or event.meeting_id
        reason = f"{stage.NAME} failed: {error}"

        if meeting_id:
            try:
                await self.ctx.store.mark_failed(meeting_id, reason, **stage.failure_fields(error))
            except NotFound:
                logger.warning("mark_failed_meeting_missing", meeting_id=meeting_id)
            except Exception as e:
                # Redelivery retries the stage, whose guards see the record as it is
                record_error(type(e).__name__, "dispatcher")
                logger.error("mark_failed_error", meeting_id=meeting_id, error=str(e))
                return StageResult(500, {"error": reason, "meetingId": meeting_id})

        logger.error("stage_failed", error=str(error), error_type=type(error).__name__, status_code=status_code)
        return StageResult(status_code, {"error": reason, "meetingId": meeting_id})
