"""
Pydantic schemas and status vocabularies shared by the pipeline stages.
"""
from datetime import date
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class MeetingStatus(str, Enum):
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


# Forward order of the happy path; FAILED sits outside it.
STATUS_ORDER: List[str] = [
    MeetingStatus.UPLOADED.value,
    MeetingStatus.TRANSCRIBING.value,
    MeetingStatus.TRANSCRIBED.value,
    MeetingStatus.EXTRACTING.value,
    MeetingStatus.EXTRACTED.value,
    MeetingStatus.SYNCING.value,
    MeetingStatus.COMPLETED.value,
]


class TranscriptionJobStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class StageStatus(str, Enum):
    """Sub-status shared by task generation and Jira processing."""
    PENDING = "pending"
    PROCESSING = "processing"
    THROTTLED = "throttled"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncHalfStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    NOT_REQUIRED = "not_required"
    COMPLETED = "completed"


# A sub-status may only move to an equal or higher rank.
SUB_STATUS_RANK: Dict[str, int] = {
    StageStatus.PENDING.value: 0,
    StageStatus.PROCESSING.value: 1,
    StageStatus.THROTTLED.value: 1,
    StageStatus.COMPLETED.value: 2,
    StageStatus.FAILED.value: 2,
    SyncHalfStatus.NOT_REQUIRED.value: 2,
    TranscriptionJobStatus.PENDING.value: 0,
    TranscriptionJobStatus.IN_PROGRESS.value: 1,
    TranscriptionJobStatus.COMPLETED.value: 2,
    TranscriptionJobStatus.FAILED.value: 2,
}

SUB_STATUS_FIELDS = (
    "transcription_job_status",
    "task_generation_status",
    "jira_processing_status",
    "jira_creation_status",
    "jira_update_status",
)

UNASSIGNED = "unassigned"
PRIORITIES = ("low", "medium", "high")
TASK_STATUSES = ("to do", "in progress", "done")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class Task(CamelModel):
    """Action item extracted from a meeting transcript."""

    title: str
    description: str = ""
    assignee: str = UNASSIGNED
    assignee_id: Optional[str] = None
    priority: str = "medium"
    due_date: Optional[str] = None
    status: str = "to do"

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("Task title must not be empty")
        return v[:255]

    @field_validator("description", mode="before")
    @classmethod
    def normalize_description(cls, v) -> str:
        return (v or "").strip()

    @field_validator("assignee", mode="before")
    @classmethod
    def normalize_assignee(cls, v) -> str:
        v = (v or "").strip()
        if not v or v.lower() in ("unassigned", "none", "n/a", "null"):
            return UNASSIGNED
        return v

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, v) -> str:
        v = (v or "").strip().lower()
        return v if v in PRIORITIES else "medium"

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v) -> str:
        v = (v or "").strip().lower().replace("_", " ").replace("-", " ")
        if v in ("todo", "open", "new"):
            return "to do"
        return v if v in TASK_STATUSES else "to do"

    @field_validator("due_date", mode="before")
    @classmethod
    def normalize_due_date(cls, v) -> Optional[str]:
        if v is None:
            return None
        if isinstance(v, date):
            return v.isoformat()
        try:
            return date.fromisoformat(str(v).strip()[:10]).isoformat()
        except ValueError:
            return None

    @property
    def is_assigned(self) -> bool:
        return self.assignee != UNASSIGNED


class TicketRef(CamelModel):
    issue_key: str
    issue_url: str
    task_title: str
    # Position in the event's task/update list; progress is keyed on it
    item_index: Optional[int] = None


class IssueUpdate(CamelModel):
    """Reconciliation decision to update an existing issue."""

    issue_key: str
    task_title: str
    status: Optional[str] = None
    assignee_id: Optional[str] = None
    comment: Optional[str] = None


class UpdateResult(TicketRef):
    operations: List[str] = Field(default_factory=list)


class SyncError(CamelModel):
    task: str
    action: str
    error: str
    item_index: Optional[int] = None


class ExtractionResult(CamelModel):
    summary: str = ""
    meeting_type: str = "general"
    tasks: List[Task] = Field(default_factory=list)
    method: str = "llm"


class ObjectMetadata(CamelModel):
    size: Optional[int] = None
    content_type: Optional[str] = None
    custom_tags: Dict[str, str] = Field(default_factory=dict)
    last_modified: Optional[str] = None


class TranscriptionJob(CamelModel):
    job_id: str
    status: TranscriptionJobStatus
    transcript_uri: Optional[str] = None
    failure_reason: Optional[str] = None


class TrackerMember(CamelModel):
    id: str
    display_name: str
    active: bool = True


class TrackerIssue(CamelModel):
    key: str
    summary: str
    status: Optional[str] = None
    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None


class Transition(CamelModel):
    id: str
    name: str
    to_status: Optional[str] = None
