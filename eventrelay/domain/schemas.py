"""
Domain event schema

The in-process contract between the domain layer and the publisher.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from eventrelay.core.time import utcnow


class Event(BaseModel):
    """An immutable fact describing something that happened"""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    entity_type: str
    entity_id: str
    client_id: str
    parent_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)

    @field_validator("event_type", "entity_type", "entity_id", "client_id", mode="before")
    @classmethod
    def not_blank(cls, v: Any) -> str:
        if isinstance(v, Enum):
            v = v.value
        v = str(v).strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, v: datetime) -> datetime:
        # stored timestamps are naive UTC
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe representation carried in tasks and sent to processors"""
        return self.model_dump(mode="json")
