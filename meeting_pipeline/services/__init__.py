"""
Provider clients.
"""
from meeting_pipeline.services.jira_service import JiraService
from meeting_pipeline.services.llm_service import LLMService
from meeting_pipeline.services.object_store import ObjectStore, parse_object_uri
from meeting_pipeline.services.transcription_service import TranscriptionService

__all__ = [
    'JiraService',
    'LLMService',
    'ObjectStore',
    'TranscriptionService',
    'parse_object_uri',
]
