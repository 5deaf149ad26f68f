"""
Outbox table backing the event bus.
"""
from sqlalchemy import Column, String, Integer, Text, DateTime, JSON

from meeting_pipeline.models.base import Base
from meeting_pipeline.utils import utcnow


class PipelineEventRecord(Base):
    """A published stage-transition event awaiting (re)delivery."""

    __tablename__ = 'pipeline_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(255), nullable=False)
    detail_type = Column(String(255), nullable=False, index=True)
    detail = Column(JSON, nullable=False)
    state = Column(String(20), nullable=False, default='pending', index=True)  # pending, delivered, dead
    available_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    deliveries = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def to_message(self) -> dict:
        """Wire form handed to the dispatcher."""
        return {
            "id": self.id,
            "source": self.source,
            "detailType": self.detail_type,
            "detail": self.detail,
            "deliveries": self.deliveries,
        }

    def __repr__(self):
        return f"<PipelineEventRecord(id={self.id}, detail_type='{self.detail_type}', state='{self.state}')>"
