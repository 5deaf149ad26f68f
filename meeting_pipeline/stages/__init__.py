"""
Pipeline stages, one per event type.
"""
from meeting_pipeline.stages.base import DEFERRED, PROCESSED, SKIPPED, Stage
from meeting_pipeline.stages.jira_sync import JiraCreateStage, JiraUpdateStage
from meeting_pipeline.stages.reconciliation import ReconciliationStage
from meeting_pipeline.stages.task_extraction import TaskExtractionStage
from meeting_pipeline.stages.transcription import (
    TranscriptionJobStateChangeStage,
    TranscriptionStartStage,
    TranscriptionStatusCheckStage,
)
from meeting_pipeline.stages.upload import UploadStage

__all__ = [
    'DEFERRED',
    'PROCESSED',
    'SKIPPED',
    'Stage',
    'JiraCreateStage',
    'JiraUpdateStage',
    'ReconciliationStage',
    'TaskExtractionStage',
    'TranscriptionJobStateChangeStage',
    'TranscriptionStartStage',
    'TranscriptionStatusCheckStage',
    'UploadStage',
]
