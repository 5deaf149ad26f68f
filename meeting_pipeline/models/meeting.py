"""
Meeting record model: the single source of truth for pipeline state.
"""
from sqlalchemy import Column, String, Integer, Text, DateTime, JSON

from meeting_pipeline.models.base import Base
from meeting_pipeline.utils import utcnow, isoformat


class MeetingRecord(Base):
    """One row per uploaded meeting recording."""

    __tablename__ = 'meeting_records'

    meeting_id = Column(String(255), primary_key=True)

    # Upload facts, set once
    file_name = Column(String(500), nullable=False)
    storage_key = Column(String(1024), nullable=False)
    storage_container = Column(String(255), nullable=False)
    file_size = Column(Integer, nullable=True)
    content_type = Column(String(255), nullable=True)
    upload_timestamp = Column(DateTime, nullable=True)

    status = Column(String(50), nullable=False, default='uploaded', index=True)

    transcription_job_id = Column(String(500), nullable=True, index=True)
    transcription_job_status = Column(String(50), nullable=False, default='PENDING')
    full_transcript = Column(Text, nullable=True)
    speaker_transcript = Column(Text, nullable=True)

    extracted_tasks = Column(JSON(none_as_null=True), nullable=True)
    meeting_summary = Column(Text, nullable=True)
    meeting_type = Column(String(50), nullable=True)
    extraction_method = Column(String(50), nullable=True)
    task_generation_status = Column(String(50), nullable=False, default='pending')
    task_generation_timestamp = Column(DateTime, nullable=True)
    task_generation_error = Column(Text, nullable=True)

    jira_processing_status = Column(String(50), nullable=False, default='pending')
    jira_processing_timestamp = Column(DateTime, nullable=True)
    jira_processing_error = Column(Text, nullable=True)
    jira_creation_status = Column(String(50), nullable=False, default='pending')
    jira_update_status = Column(String(50), nullable=False, default='pending')
    # Reconciliation output {"creates": [...], "updates": [...]}, written once
    jira_plan = Column(JSON(none_as_null=True), nullable=True)
    jira_tickets = Column(JSON(none_as_null=True), nullable=True)
    jira_creation_errors = Column(JSON(none_as_null=True), nullable=True)
    jira_updates = Column(JSON(none_as_null=True), nullable=True)
    jira_update_errors = Column(JSON(none_as_null=True), nullable=True)

    # Earliest time a throttled stage may call its provider again
    retry_after = Column(DateTime, nullable=True)

    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        """Public camelCase view used by the query API."""
        return {
            "meetingId": self.meeting_id,
            "fileName": self.file_name,
            "storageKey": self.storage_key,
            "storageContainer": self.storage_container,
            "fileSize": self.file_size,
            "contentType": self.content_type,
            "uploadTimestamp": isoformat(self.upload_timestamp),
            "status": self.status,
            "transcriptionJobId": self.transcription_job_id,
            "transcriptionJobStatus": self.transcription_job_status,
            "fullTranscript": self.full_transcript,
            "extractedTasks": self.extracted_tasks or [],
            "meetingSummary": self.meeting_summary,
            "meetingType": self.meeting_type,
            "extractionMethod": self.extraction_method,
            "taskGenerationStatus": self.task_generation_status,
            "taskGenerationTimestamp": isoformat(self.task_generation_timestamp),
            "taskGenerationError": self.task_generation_error,
            "jiraProcessingStatus": self.jira_processing_status,
            "jiraProcessingError": self.jira_processing_error,
            "jiraTickets": self.jira_tickets or [],
            "jiraUpdates": self.jira_updates or [],
            "jiraErrors": (self.jira_creation_errors or []) + (self.jira_update_errors or []),
            "errorMessage": self.error_message,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<MeetingRecord(meeting_id='{self.meeting_id}', status='{self.status}')>"
