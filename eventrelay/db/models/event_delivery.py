"""
Event Delivery Models - per-destination delivery lineage and its attempts
"""
import enum
from uuid import uuid4
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, JSON, ForeignKey,
    Index, UniqueConstraint,
)

from eventrelay.db.database import Base
from eventrelay.core.time import utcnow


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    EXHAUSTED = "exhausted"


TERMINAL_STATUSES = (DeliveryStatus.SUCCEEDED, DeliveryStatus.EXHAUSTED)
CLAIMABLE_STATUSES = (DeliveryStatus.PENDING, DeliveryStatus.FAILED_RETRYABLE)


class AttemptOutcome(str, enum.Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class EventDelivery(Base):
    """One event -> one processor config. Never deleted."""

    __tablename__ = "event_deliveries"

    delivery_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    event_id = Column(String(36), ForeignKey("events.event_id"), nullable=False, index=True)
    config_id = Column(String(36), ForeignKey("processor_configs.config_id"), nullable=False)

    status = Column(SQLEnum(DeliveryStatus), default=DeliveryStatus.PENDING, nullable=False, index=True)
    attempt_count = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)

    next_eligible_at = Column(DateTime, nullable=True)
    # gate lease; set while status == in_flight
    in_flight_since = Column(DateTime, nullable=True)

    # event snapshot sent to the processor
    request_payload = Column(JSON, nullable=False, default=dict)
    last_error = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("event_id", "config_id", name="uq_event_deliveries_event_config"),
        Index("ix_event_deliveries_status_eligible", "status", "next_eligible_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class EventDeliveryAttempt(Base):
    """Insert-only record of a single execution"""

    __tablename__ = "event_delivery_attempts"

    attempt_id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    delivery_id = Column(
        String(36), ForeignKey("event_deliveries.delivery_id"), nullable=False, index=True
    )
    attempt_number = Column(Integer, nullable=False)

    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=False)
    outcome = Column(SQLEnum(AttemptOutcome), nullable=False)
    error_detail = Column(String(2000), nullable=True)
    status_code = Column(Integer, nullable=True)
    latency_ms = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("delivery_id", "attempt_number", name="uq_delivery_attempt_number"),
    )
