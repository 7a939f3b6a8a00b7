"""
Database Models
"""
from eventrelay.db.models.event import EventRecord, EventType, EntityType
from eventrelay.db.models.processor_config import (
    ProcessorConfig,
    ProcessorType,
    BackoffStrategy,
)
from eventrelay.db.models.event_delivery import (
    EventDelivery,
    EventDeliveryAttempt,
    DeliveryStatus,
    AttemptOutcome,
)

__all__ = [
    "EventRecord",
    "EventType",
    "EntityType",
    "ProcessorConfig",
    "ProcessorType",
    "BackoffStrategy",
    "EventDelivery",
    "EventDeliveryAttempt",
    "DeliveryStatus",
    "AttemptOutcome",
]
