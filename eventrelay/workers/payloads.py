"""
Task payload schemas and the broker wire envelope

Envelope (JSON): {"id", "task_type", "payload", "enqueued_at"}
"""
import enum
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Type
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

from eventrelay.core.config import settings
from eventrelay.core.exceptions import (
    TaskPayloadError,
    TaskSerializationError,
    UnknownTaskTypeError,
)
from eventrelay.core.time import utcnow


class TaskType(str, enum.Enum):
    DELIVERY = "deliver_to_processor"
    PROCESS_EVENT = "process_event"
    CHAT_WORKFLOW = "chat_workflow"
    SUGGESTION_WORKFLOW = "suggestion_workflow"


class DeliveryTaskPayload(BaseModel):
    delivery_id: str
    event: dict[str, Any] = Field(default_factory=dict)


class ProcessEventPayload(BaseModel):
    event: dict[str, Any]


class ChatWorkflowPayload(BaseModel):
    message_id: str
    session_id: str
    client_id: str | None = None
    workflow_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class SuggestionWorkflowPayload(BaseModel):
    message_id: str
    session_id: str
    client_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


PAYLOAD_SCHEMAS: dict[TaskType, Type[BaseModel]] = {
    TaskType.DELIVERY: DeliveryTaskPayload,
    TaskType.PROCESS_EVENT: ProcessEventPayload,
    TaskType.CHAT_WORKFLOW: ChatWorkflowPayload,
    TaskType.SUGGESTION_WORKFLOW: SuggestionWorkflowPayload,
}


def default_queue_for(task_type: TaskType) -> str:
    if task_type in (TaskType.CHAT_WORKFLOW, TaskType.SUGGESTION_WORKFLOW):
        return settings.WORKFLOW_QUEUE_NAME
    return settings.EVENTS_QUEUE_NAME


@dataclass(frozen=True)
class Task:
    """A decoded envelope: task type plus its typed payload"""
    id: str
    task_type: TaskType
    payload: BaseModel
    enqueued_at: datetime


def build_payload(task_type: TaskType, payload: BaseModel | dict[str, Any]) -> BaseModel:
    """Validate a payload against the schema of its task type"""
    schema = PAYLOAD_SCHEMAS[task_type]
    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        raise TaskSerializationError(
            task_type.value,
            f"expected {schema.__name__}, got {type(payload).__name__}",
        )
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        raise TaskSerializationError(task_type.value, str(e)) from e


def encode_envelope(task_type: TaskType, payload: BaseModel, task_id: str | None = None) -> tuple[str, str]:
    """Returns (task_id, body)"""
    task_id = task_id or str(uuid4())
    try:
        body = json.dumps({
            "id": task_id,
            "task_type": task_type.value,
            "payload": payload.model_dump(mode="json"),
            "enqueued_at": utcnow().isoformat(),
        })
    except (TypeError, ValueError) as e:
        raise TaskSerializationError(task_type.value, str(e)) from e
    return task_id, body


def decode_envelope(body: str | bytes) -> Task:
    """
    Decode a broker message into a Task.

    Raises UnknownTaskTypeError for task types this process cannot handle
    and TaskPayloadError for anything else that does not decode.
    """
    try:
        raw = json.loads(body)
    except (TypeError, ValueError) as e:
        raise TaskPayloadError(f"body is not JSON: {e}") from e
    if not isinstance(raw, dict):
        raise TaskPayloadError("envelope must be a JSON object")

    raw_type = raw.get("task_type")
    try:
        task_type = TaskType(raw_type)
    except ValueError:
        raise UnknownTaskTypeError(raw_type) from None

    try:
        payload = PAYLOAD_SCHEMAS[task_type].model_validate(raw.get("payload") or {})
    except ValidationError as e:
        raise TaskPayloadError(str(e), task_type.value) from e

    enqueued_at = raw.get("enqueued_at")
    try:
        enqueued_at = datetime.fromisoformat(enqueued_at) if enqueued_at else utcnow()
    except (TypeError, ValueError):
        enqueued_at = utcnow()

    return Task(
        id=str(raw.get("id") or uuid4()),
        task_type=task_type,
        payload=payload,
        enqueued_at=enqueued_at,
    )
