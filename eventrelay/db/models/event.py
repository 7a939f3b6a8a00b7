"""
Event Model - immutable facts that deliveries reference
"""
import enum
from sqlalchemy import Column, String, DateTime, JSON, Index

from eventrelay.db.database import Base
from eventrelay.core.time import utcnow


class EventType(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    CLOSED = "closed"
    DELETED = "deleted"
    TRIGGERED = "triggered"
    COMPLETED = "completed"
    ERROR = "error"
    HANDOVER = "handover"


class EntityType(str, enum.Enum):
    CHAT_MESSAGE = "chat_message"
    CHAT_SESSION = "chat_session"
    CHAT_SUGGESTION = "chat_suggestion"
    AI_SERVICE = "ai_service"
    CSAT_SESSION = "csat_session"
    CSAT_QUESTION = "csat_question"
    CSAT_RESPONSE = "csat_response"


class EventRecord(Base):
    """Stored once per event_id; never updated"""

    __tablename__ = "events"

    event_id = Column(String(36), primary_key=True)
    event_type = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    client_id = Column(String(100), nullable=False, index=True)
    parent_id = Column(String(100), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    occurred_at = Column(DateTime, nullable=False)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_events_entity", "entity_type", "entity_id"),
    )
