"""
Response schemas for the delivery query API
"""
from datetime import datetime
from typing import List

from pydantic import BaseModel, field_validator


class DeliveryResponse(BaseModel):
    """Current state of one delivery"""
    delivery_id: str
    event_id: str
    config_id: str
    status: str
    attempt_count: int
    max_attempts: int
    next_eligible_at: datetime | None
    last_error: str | None
    created_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return getattr(v, "value", v)


class DeliveryAttemptResponse(BaseModel):
    attempt_number: int
    started_at: datetime
    finished_at: datetime
    outcome: str
    error_detail: str | None
    status_code: int | None
    latency_ms: int

    model_config = {"from_attributes": True}

    @field_validator("outcome", mode="before")
    @classmethod
    def outcome_value(cls, v):
        return getattr(v, "value", v)


class DeliveryDetailResponse(DeliveryResponse):
    """Delivery with its attempts, oldest first"""
    attempts: List[DeliveryAttemptResponse] = []


class EventDeliveriesResponse(BaseModel):
    event_id: str
    event_type: str
    entity_type: str
    entity_id: str
    client_id: str
    parent_id: str | None
    occurred_at: datetime
    deliveries: List[DeliveryResponse]


class DeliveryStatsResponse(BaseModel):
    pending: int
    in_flight: int
    succeeded: int
    failed_retryable: int
    exhausted: int
    total: int


class RetryResponse(BaseModel):
    success: bool
    task_id: str
    delivery: DeliveryResponse
