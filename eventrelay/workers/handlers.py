"""
Task handlers

Each invocation opens its own database session; handlers of the same and
of different types run concurrently.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable

import httpx
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.config import settings
from eventrelay.core.exceptions import (
    DeliveryNotEligibleError,
    DeliveryNotFoundError,
    EnqueueError,
    PermanentTaskError,
    PublishError,
    RetryLater,
    TransientTaskError,
)
from eventrelay.core.logging import get_logger
from eventrelay.core.time import utcnow
from eventrelay.db.models.event_delivery import AttemptOutcome, DeliveryStatus, EventDelivery
from eventrelay.domain.schemas import Event
from eventrelay.domain.services.delivery_tracking_service import (
    DeliveryClaim,
    DeliveryTrackingService,
)
from eventrelay.domain.services.dispatch_service import DispatchResult, ProcessorDispatcher
from eventrelay.domain.services.publisher_service import EventPublisher
from eventrelay.workers.payloads import (
    ChatWorkflowPayload,
    DeliveryTaskPayload,
    ProcessEventPayload,
    SuggestionWorkflowPayload,
    TaskType,
)
from eventrelay.workers.producer import TaskProducer
from eventrelay.workers.registry import HandlerRegistry, TaskContext

logger = get_logger(__name__)


class TaskHandlers:
    """Handlers for every task type, sharing one producer and one dispatcher"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        producer: TaskProducer,
        dispatcher: ProcessorDispatcher | None = None,
        workflow_client: httpx.AsyncClient | None = None,
        attempt_timeout_seconds: float | None = None,
    ):
        self.session_factory = session_factory
        self.producer = producer
        self.dispatcher = dispatcher or ProcessorDispatcher()
        self.workflow_client = workflow_client
        self.attempt_timeout_seconds = (
            attempt_timeout_seconds if attempt_timeout_seconds is not None
            else settings.DELIVERY_ATTEMPT_TIMEOUT_SECONDS
        )

    def register_all(self, registry: HandlerRegistry) -> HandlerRegistry:
        registry.register(TaskType.DELIVERY, self.deliver_to_processor)
        registry.register(TaskType.PROCESS_EVENT, self.process_event)
        registry.register(TaskType.CHAT_WORKFLOW, self.run_chat_workflow)
        registry.register(TaskType.SUGGESTION_WORKFLOW, self.run_suggestion_workflow)
        return registry

    # ==================== deliver_to_processor ====================

    async def deliver_to_processor(self, ctx: TaskContext, payload: DeliveryTaskPayload) -> None:
        """
        One delivery attempt.

        Exits without any network call when another worker holds the gate
        or the delivery is already terminal. The gate is released on every
        exit path once it was taken.
        """
        async with self.session_factory() as db:
            tracking = DeliveryTrackingService(db)
            try:
                claim = await tracking.begin_attempt(payload.delivery_id)
            except DeliveryNotEligibleError as e:
                raise RetryLater(e.retry_after_seconds, "delivery not eligible yet") from e
            except DeliveryNotFoundError as e:
                raise PermanentTaskError(e.message, e.details) from e
            if claim is None:
                return

            config = await tracking.get_processor_config(claim.config_id)
            if config is None:
                await tracking.record_outcome(
                    claim, AttemptOutcome.PERMANENT_FAILURE, "processor config not found"
                )
                return

            event = payload.event or claim.request_payload
            try:
                result = await asyncio.wait_for(
                    self.dispatcher.dispatch(
                        config, event, claim.attempt_number, delivery_id=claim.delivery_id
                    ),
                    timeout=self.attempt_timeout_seconds,
                )
            except asyncio.TimeoutError:
                result = DispatchResult(
                    AttemptOutcome.TRANSIENT_FAILURE,
                    error_detail=f"attempt timed out after {self.attempt_timeout_seconds}s",
                )
            except asyncio.CancelledError:
                await asyncio.shield(self._release_cancelled(claim))
                raise
            except Exception as e:
                logger.error(
                    "Dispatcher raised",
                    extra_data={"delivery_id": claim.delivery_id, "error": str(e)},
                    exc_info=True,
                )
                result = DispatchResult(
                    AttemptOutcome.TRANSIENT_FAILURE,
                    error_detail=f"{type(e).__name__}: {e}",
                )

            delivery = await tracking.record_outcome(
                claim, result.outcome, result.error_detail, result.status_code
            )
            if delivery is not None and delivery.status == DeliveryStatus.FAILED_RETRYABLE:
                await self._schedule_retry(tracking, delivery, config.target_queue, event)

    async def _release_cancelled(self, claim: DeliveryClaim) -> None:
        async with self.session_factory() as db:
            await DeliveryTrackingService(db).record_outcome(
                claim, AttemptOutcome.TRANSIENT_FAILURE, "attempt cancelled"
            )

    async def _schedule_retry(
        self,
        tracking: DeliveryTrackingService,
        delivery: EventDelivery,
        target_queue: str,
        event: dict[str, Any],
    ) -> None:
        delay = max(0.0, (delivery.next_eligible_at - utcnow()).total_seconds())
        try:
            await self.producer.enqueue(
                TaskType.DELIVERY,
                DeliveryTaskPayload(delivery_id=delivery.delivery_id, event=event),
                target_queue=target_queue,
                delay_seconds=delay,
            )
        except EnqueueError as e:
            # stays failed_retryable; the maintenance sweep re-enqueues it
            logger.warning(
                "Could not enqueue delivery retry",
                extra_data={"delivery_id": delivery.delivery_id, "error": e.message}
            )
            return
        await tracking.mark_requeued(delivery.delivery_id)

    # ==================== process_event ====================

    async def process_event(self, ctx: TaskContext, payload: ProcessEventPayload) -> None:
        try:
            event = Event.model_validate(payload.event)
        except ValidationError as e:
            raise PermanentTaskError(f"invalid event: {e}") from e

        async with self.session_factory() as db:
            try:
                await EventPublisher(db, self.producer).publish(event)
            except PublishError as e:
                # the failed deliveries are already exhausted; publishing again changes nothing
                logger.error(
                    "Deferred publish left deliveries unenqueued",
                    extra_data=e.details,
                )

    # ==================== workflows ====================

    async def run_chat_workflow(self, ctx: TaskContext, payload: ChatWorkflowPayload) -> None:
        await self._call_workflow_service(ctx, payload.model_dump(), suggestion=False)

    async def run_suggestion_workflow(self, ctx: TaskContext, payload: SuggestionWorkflowPayload) -> None:
        await self._call_workflow_service(ctx, payload.model_dump(), suggestion=True)

    async def _call_workflow_service(
        self, ctx: TaskContext, body: dict[str, Any], suggestion: bool
    ) -> None:
        if not settings.WORKFLOW_SERVICE_URL:
            raise PermanentTaskError("WORKFLOW_SERVICE_URL is not configured")

        headers = {"Content-Type": "application/json"}
        if settings.WORKFLOW_SERVICE_TOKEN:
            headers["Authorization"] = f"Bearer {settings.WORKFLOW_SERVICE_TOKEN}"
        body = {**body, "suggestion": suggestion, "task_id": ctx.task_id}

        client = self.workflow_client or httpx.AsyncClient()
        try:
            response = await client.post(
                settings.WORKFLOW_SERVICE_URL,
                json=body,
                headers=headers,
                timeout=settings.WORKFLOW_SERVICE_TIMEOUT_SECONDS,
            )
        except httpx.RequestError as e:
            raise TransientTaskError(
                f"workflow service unreachable: {type(e).__name__}",
                {"error": str(e)},
            ) from e
        finally:
            if client is not self.workflow_client:
                await client.aclose()

        if response.status_code >= 500:
            raise TransientTaskError(
                f"workflow service returned {response.status_code}",
                {"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise PermanentTaskError(
                f"workflow service rejected task with {response.status_code}",
                {"status_code": response.status_code, "response_text": response.text[:500]},
            )
        logger.info(
            "Workflow triggered",
            extra_data={
                "task_id": ctx.task_id,
                "message_id": body.get("message_id"),
                "session_id": body.get("session_id"),
                "suggestion": suggestion,
            }
        )


def build_registry(handlers: TaskHandlers) -> HandlerRegistry:
    return handlers.register_all(HandlerRegistry())
