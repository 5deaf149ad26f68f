"""
Stage-trigger events.

Each recognized (source, detailType) pair maps to exactly one event class with
a typed detail payload. Anything else is rejected by parse_event with
UnrecognizedEvent rather than falling through.
"""
import json
from datetime import datetime
from typing import ClassVar, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from meeting_pipeline.exceptions import UnrecognizedEvent, ValidationError
from meeting_pipeline.schemas import CamelModel, IssueUpdate, Task, TranscriptionJobStatus
from meeting_pipeline.utils import utcnow

APP_SOURCE = "meeting.app"
OBJECT_STORE_SOURCE = "object.store"
TRANSCRIPTION_SOURCE = "transcription.provider"


# ---------------------------------------------------------------------------
# Detail payloads
# ---------------------------------------------------------------------------

class ObjectCreatedDetail(CamelModel):
    container: str
    key: str
    size: Optional[int] = None


class MeetingReadyForTranscriptionDetail(CamelModel):
    meeting_id: str
    container: str
    key: str
    file_name: str


class TranscriptionStatusCheckDetail(CamelModel):
    meeting_id: str
    job_id: str
    check_count: int = Field(default=0, ge=0)


class TranscriptionJobStateChangeDetail(CamelModel):
    job_id: str
    status: TranscriptionJobStatus
    failure_reason: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return v.upper() if isinstance(v, str) else v


class RetryableDetail(CamelModel):
    """Detail for stages guarded by the retry/backoff coordinator."""
    meeting_id: str
    retry_attempt: int = Field(default=0, ge=0)
    queued_at: Optional[datetime] = None


class TranscriptionCompletedDetail(RetryableDetail):
    pass


class TaskExtractionCompletedDetail(RetryableDetail):
    pass


class TasksReadyForCreationDetail(RetryableDetail):
    tasks: List[Task] = Field(min_length=1)


class TasksReadyForUpdateDetail(RetryableDetail):
    updates: List[IssueUpdate] = Field(min_length=1)


# ---------------------------------------------------------------------------
# Event variants
# ---------------------------------------------------------------------------

class BaseEvent(BaseModel):
    SOURCE: ClassVar[str]
    DETAIL_TYPE: ClassVar[str]

    detail: CamelModel
    # Bus leases of this exact message; above 1 means an earlier lease expired unacked
    deliveries: int = Field(default=1, ge=1)

    @property
    def source(self) -> str:
        return self.SOURCE

    @property
    def detail_type(self) -> str:
        return self.DETAIL_TYPE

    @property
    def meeting_id(self) -> Optional[str]:
        return getattr(self.detail, "meeting_id", None)

    def to_message(self) -> dict:
        return {
            "source": self.SOURCE,
            "detailType": self.DETAIL_TYPE,
            "detail": self.detail.to_json_dict(),
        }

    def redelivery(self, retry_attempt: int):
        """Copy of a retryable event stamped with a new attempt counter and queuedAt."""
        if not isinstance(self.detail, RetryableDetail):
            raise TypeError(f"{self.DETAIL_TYPE} events are not retryable")
        detail = self.detail.model_copy(update={"retry_attempt": retry_attempt, "queued_at": utcnow()})
        return self.model_copy(update={"detail": detail})


class ObjectCreated(BaseEvent):
    SOURCE = OBJECT_STORE_SOURCE
    DETAIL_TYPE = "Object Created"
    detail: ObjectCreatedDetail


class MeetingReadyForTranscription(BaseEvent):
    SOURCE = APP_SOURCE
    DETAIL_TYPE = "Meeting Ready for Transcription"
    detail: MeetingReadyForTranscriptionDetail


class TranscriptionStatusCheck(BaseEvent):
    SOURCE = APP_SOURCE
    DETAIL_TYPE = "Transcription Status Check"
    detail: TranscriptionStatusCheckDetail


class TranscriptionJobStateChange(BaseEvent):
    SOURCE = TRANSCRIPTION_SOURCE
    DETAIL_TYPE = "Transcription Job State Change"
    detail: TranscriptionJobStateChangeDetail


class TranscriptionCompleted(BaseEvent):
    SOURCE = APP_SOURCE
    DETAIL_TYPE = "Transcription Completed"
    detail: TranscriptionCompletedDetail


class TaskExtractionCompleted(BaseEvent):
    SOURCE = APP_SOURCE
    DETAIL_TYPE = "Task Extraction Completed"
    detail: TaskExtractionCompletedDetail


class TasksReadyForCreation(BaseEvent):
    SOURCE = APP_SOURCE
    DETAIL_TYPE = "Tasks Ready for Creation"
    detail: TasksReadyForCreationDetail


class TasksReadyForUpdate(BaseEvent):
    SOURCE = APP_SOURCE
    DETAIL_TYPE = "Tasks Ready for Update"
    detail: TasksReadyForUpdateDetail


PipelineEvent = Union[
    ObjectCreated,
    MeetingReadyForTranscription,
    TranscriptionStatusCheck,
    TranscriptionJobStateChange,
    TranscriptionCompleted,
    TaskExtractionCompleted,
    TasksReadyForCreation,
    TasksReadyForUpdate,
]

EVENT_TYPES: Dict[Tuple[str, str], Type[BaseEvent]] = {
    (cls.SOURCE, cls.DETAIL_TYPE): cls
    for cls in (
        ObjectCreated,
        MeetingReadyForTranscription,
        TranscriptionStatusCheck,
        TranscriptionJobStateChange,
        TranscriptionCompleted,
        TaskExtractionCompleted,
        TasksReadyForCreation,
        TasksReadyForUpdate,
    )
}


def parse_event(raw: dict) -> PipelineEvent:
    """
    Parse a raw bus message into its event variant.

    Accepts both 'detailType' and the EventBridge-style 'detail-type' key, and a
    detail given as an object or a JSON string. The bus adds 'deliveries'.

    Raises:
        UnrecognizedEvent: Unknown (source, detailType) pair
        ValidationError: Known pair with a malformed detail
    """
    if not isinstance(raw, dict):
        raise ValidationError("Event must be a JSON object")

    source = raw.get("source")
    detail_type = raw.get("detailType") or raw.get("detail-type")
    event_cls = EVENT_TYPES.get((source, detail_type))
    if event_cls is None:
        raise UnrecognizedEvent(source, detail_type)

    detail = raw.get("detail") or {}
    if isinstance(detail, str):
        try:
            detail = json.loads(detail)
        except ValueError as e:
            raise ValidationError(f"{detail_type} detail is not valid JSON: {e}")

    try:
        return event_cls(detail=detail, deliveries=raw.get("deliveries") or 1)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {detail_type} detail: {e.errors(include_url=False)}")
