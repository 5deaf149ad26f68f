"""
Database models package.
Import all models here so table metadata is complete before create_all.
"""
from meeting_pipeline.models.base import Base
from meeting_pipeline.models.meeting import MeetingRecord
from meeting_pipeline.models.event import PipelineEventRecord

__all__ = [
    'Base',
    'MeetingRecord',
    'PipelineEventRecord',
]
