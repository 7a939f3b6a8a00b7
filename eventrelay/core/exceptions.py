"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the
publisher, the worker pool and the query API.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses and logs"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    NOT_FOUND = "ERR_1002"

    # Delivery errors (2xxx)
    DELIVERY_NOT_FOUND = "ERR_2001"
    EVENT_NOT_FOUND = "ERR_2002"
    DELIVERY_NOT_ELIGIBLE = "ERR_2003"
    INVALID_TARGET = "ERR_2004"

    # Enqueue errors (3xxx)
    ENQUEUE_FAILED = "ERR_3001"
    TASK_SERIALIZATION = "ERR_3002"
    UNKNOWN_QUEUE = "ERR_3003"
    BROKER_UNAVAILABLE = "ERR_3004"
    PUBLISH_PARTIAL_FAILURE = "ERR_3005"

    # Task execution errors (4xxx)
    UNKNOWN_TASK_TYPE = "ERR_4001"
    TASK_PAYLOAD_INVALID = "ERR_4002"
    TASK_PERMANENT_FAILURE = "ERR_4003"
    TASK_TRANSIENT_FAILURE = "ERR_4004"

    # External service errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class DeliveryNotFoundError(NotFoundException):
    """Raised when an event delivery is not found"""

    def __init__(self, delivery_id: str):
        super().__init__("Delivery", delivery_id, ErrorCode.DELIVERY_NOT_FOUND)


class EventNotFoundError(NotFoundException):
    """Raised when an event is not found"""

    def __init__(self, event_id: str):
        super().__init__("Event", event_id, ErrorCode.EVENT_NOT_FOUND)


class InvalidTargetError(AppException):
    """Raised when a processor config carries a malformed destination"""

    def __init__(self, config_id: str | None, reason: str):
        super().__init__(
            message=f"Invalid processor target: {reason}",
            error_code=ErrorCode.INVALID_TARGET,
            status_code=400,
            details={"config_id": config_id, "reason": reason}
        )


# ---------------------------------------------------------------------------
# Enqueue path - the only errors callers of publish() ever see
# ---------------------------------------------------------------------------

class EnqueueError(AppException):
    """Base exception for failures to hand a task to the broker"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.ENQUEUE_FAILED,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )


class TaskSerializationError(EnqueueError):
    """Raised when a payload does not fit the schema of its task type"""

    def __init__(self, task_type: str, reason: str):
        super().__init__(
            message=f"Payload for task '{task_type}' failed to serialize: {reason}",
            error_code=ErrorCode.TASK_SERIALIZATION,
            details={"task_type": task_type, "reason": reason}
        )
        self.status_code = 400


class UnknownQueueError(EnqueueError):
    """Raised when enqueueing to a queue the producer does not know"""

    def __init__(self, queue: str, known_queues: list[str]):
        super().__init__(
            message=f"Unknown target queue: {queue}",
            error_code=ErrorCode.UNKNOWN_QUEUE,
            details={"queue": queue, "known_queues": known_queues}
        )
        self.status_code = 400


class BrokerUnavailableError(EnqueueError):
    """Raised when the broker keeps refusing a task after the producer's retries"""

    def __init__(self, queue: str, attempts: int, error: str):
        super().__init__(
            message=f"Broker unavailable while enqueueing to '{queue}'",
            error_code=ErrorCode.BROKER_UNAVAILABLE,
            details={"queue": queue, "attempts": attempts, "error": error}
        )


class PublishError(EnqueueError):
    """Raised when some deliveries of an event could not be enqueued"""

    def __init__(
        self,
        event_id: str,
        failed_delivery_ids: list[str],
        enqueued_delivery_ids: list[str]
    ):
        super().__init__(
            message=(
                f"Failed to enqueue {len(failed_delivery_ids)} "
                f"deliveries for event {event_id}"
            ),
            error_code=ErrorCode.PUBLISH_PARTIAL_FAILURE,
            details={
                "event_id": event_id,
                "failed_delivery_ids": failed_delivery_ids,
                "enqueued_delivery_ids": enqueued_delivery_ids,
            }
        )
        self.failed_delivery_ids = failed_delivery_ids
        self.enqueued_delivery_ids = enqueued_delivery_ids


class BrokerConnectionError(AppException):
    """Raised by task queue backends when the broker connection is lost"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Broker connection error: {message}",
            error_code=ErrorCode.BROKER_UNAVAILABLE,
            status_code=503,
            details=details
        )


# ---------------------------------------------------------------------------
# Task execution
# ---------------------------------------------------------------------------

class TaskError(AppException):
    """Base exception for worker-side task failures"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=500,
            details=details
        )


class UnknownTaskTypeError(TaskError):
    """Raised when an envelope names a task type nobody can handle"""

    def __init__(self, task_type: Any):
        super().__init__(
            message=f"Unknown task type: {task_type}",
            error_code=ErrorCode.UNKNOWN_TASK_TYPE,
            details={"task_type": str(task_type)}
        )


class TaskPayloadError(TaskError):
    """Raised when an envelope cannot be decoded into a typed task"""

    def __init__(self, reason: str, task_type: str | None = None):
        super().__init__(
            message=f"Invalid task envelope: {reason}",
            error_code=ErrorCode.TASK_PAYLOAD_INVALID,
            details={"task_type": task_type, "reason": reason}
        )


class PermanentTaskError(TaskError):
    """Handler failure that must not be redelivered"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.TASK_PERMANENT_FAILURE, details)


class TransientTaskError(TaskError):
    """Handler failure that the pool may redeliver"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.TASK_TRANSIENT_FAILURE, details)


class RetryLater(Exception):
    """Ask the pool to hand the task back after `delay_seconds`.

    Not a failure: does not count against the redelivery ceiling.
    """

    def __init__(self, delay_seconds: float, reason: str = ""):
        super().__init__(reason or f"retry in {delay_seconds}s")
        self.delay_seconds = max(0.0, delay_seconds)
        self.reason = reason


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------

class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


# ---------------------------------------------------------------------------
# Delivery state machine
# ---------------------------------------------------------------------------

class InvalidStateTransitionError(AppException):
    """Raised when a delivery state transition is not allowed"""

    def __init__(self, delivery_id: str, current_state: str, target_state: str):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=409,
            details={
                "delivery_id": delivery_id,
                "current_state": current_state,
                "target_state": target_state,
            }
        )


class DeliveryNotEligibleError(AppException):
    """Raised when a retry shows up before the delivery's next_eligible_at"""

    def __init__(self, delivery_id: str, retry_after_seconds: float):
        super().__init__(
            message=f"Delivery {delivery_id} is not eligible yet",
            error_code=ErrorCode.DELIVERY_NOT_ELIGIBLE,
            status_code=409,
            details={
                "delivery_id": delivery_id,
                "retry_after_seconds": retry_after_seconds,
            }
        )
        self.retry_after_seconds = retry_after_seconds
