"""
Common shape of a pipeline stage.
"""
from typing import Any, Dict, Optional

from meeting_pipeline.context import PipelineContext
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.schemas import StageStatus
from meeting_pipeline.utils import utcnow

logger = get_logger(__name__)

PROCESSED = "processed"
SKIPPED = "skipped"
DEFERRED = "deferred"


class Stage:
    """
    A stateless unit of work triggered by one event.

    handle() returns a response body on success, skip or deferral and raises
    on failure; the dispatcher turns exceptions into failure responses and,
    for fatal ones, writes `failed` into the record (plus
    `<FAILURE_PREFIX>_status/_error` when the stage owns a sub-status).
    """

    NAME = "stage"
    FAILURE_PREFIX: Optional[str] = None

    def __init__(self, ctx: PipelineContext):
        self.ctx = ctx
        # Set by stages that locate the meeting indirectly (e.g. by job id)
        self.meeting_id: Optional[str] = None

    async def handle(self, event) -> Dict[str, Any]:
        raise NotImplementedError

    def failure_fields(self, error: Exception) -> Dict[str, Any]:
        """Extra record fields written alongside status=failed."""
        if not self.FAILURE_PREFIX:
            return {}
        return {
            f"{self.FAILURE_PREFIX}_status": StageStatus.FAILED,
            f"{self.FAILURE_PREFIX}_error": str(error),
            f"{self.FAILURE_PREFIX}_timestamp": utcnow(),
        }

    def result(self, outcome: str, meeting_id: Optional[str], message: str, **extra: Any) -> Dict[str, Any]:
        body = {"outcome": outcome, "meetingId": meeting_id, "message": message}
        body.update(extra)
        return body

    def skip(self, meeting_id: Optional[str], reason: str, **extra: Any) -> Dict[str, Any]:
        logger.info("stage_skipped", stage=self.NAME, meeting_id=meeting_id, reason=reason)
        return self.result(SKIPPED, meeting_id, reason, **extra)
