"""
Processor Config Model - tenant subscription rules

Rows are managed by the CRUD layer; this package only reads them.
"""
import enum
from uuid import uuid4
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Boolean

from eventrelay.db.database import Base
from eventrelay.core.time import utcnow

WILDCARD = "*"


class ProcessorType(str, enum.Enum):
    HTTP_WEBHOOK = "http_webhook"
    AMQP = "amqp"


class BackoffStrategy(str, enum.Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class ProcessorConfig(Base):
    """Maps event criteria of one client to a delivery destination"""

    __tablename__ = "processor_configs"

    config_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    client_id = Column(String(100), nullable=False, index=True)
    name = Column(String(200), nullable=False, default="")

    # ["*"] or [] matches everything
    entity_types = Column(JSON, nullable=False, default=list)
    event_types = Column(JSON, nullable=False, default=list)

    # kept as a plain string so a bad value surfaces as a config failure
    processor_type = Column(String(30), nullable=False, default=ProcessorType.HTTP_WEBHOOK.value)
    target = Column(JSON, nullable=False, default=dict)
    target_queue = Column(String(100), nullable=False, default="events")

    active = Column(Boolean, default=True, index=True)

    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_strategy = Column(SQLEnum(BackoffStrategy), default=BackoffStrategy.LINEAR)
    backoff_base_seconds = Column(Integer, nullable=True)
    backoff_max_seconds = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def matches(self, entity_type: str, event_type: str) -> bool:
        return (
            _matches_filter(self.entity_types, entity_type)
            and _matches_filter(self.event_types, event_type)
        )


def _matches_filter(allowed: list[str] | None, value: str) -> bool:
    if not allowed or WILDCARD in allowed:
        return True
    return value in allowed
