"""
Event Publisher - fans one domain event out to every matching processor

For each active ProcessorConfig of the event's client that matches its
entity and event type, exactly one EventDelivery is created and one
delivery task is enqueued. Publishing the same event again creates and
enqueues nothing new.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.exceptions import (
    EnqueueError,
    EventNotFoundError,
    InvalidTargetError,
    PublishError,
)
from eventrelay.core.logging import get_logger, log_async_operation
from eventrelay.db.models.event import EntityType, EventRecord
from eventrelay.db.models.processor_config import ProcessorConfig
from eventrelay.domain.schemas import Event
from eventrelay.domain.services.delivery_tracking_service import DeliveryTrackingService
from eventrelay.domain.services.dispatch_service import validate_target
from eventrelay.workers.payloads import DeliveryTaskPayload, ProcessEventPayload, TaskType
from eventrelay.workers.producer import TaskProducer

logger = get_logger(__name__)


@dataclass(frozen=True)
class MatchedConfig:
    """The parts of a matching config the fan-out needs, read once"""
    config_id: str
    max_attempts: int
    target_queue: str
    invalid_reason: str | None = None


class EventPublisher:
    """Resolves matching configs, persists deliveries, enqueues delivery tasks"""

    def __init__(self, db: AsyncSession, producer: TaskProducer):
        self.db = db
        self.producer = producer
        self.tracking = DeliveryTrackingService(db)

    @log_async_operation("publish_event")
    async def publish(self, event: Event) -> List[str]:
        """
        Fan the event out. Returns the ids of deliveries created and enqueued.

        Deliveries whose target is malformed are exhausted on the spot and
        are not part of the result. If some deliveries could not be
        enqueued, they are exhausted too and PublishError is raised once
        every config has been handled.
        """
        await self.tracking.store_event(event)
        matches = await self._match_configs(event)
        if not matches:
            logger.debug(
                "No processor configs match event",
                extra_data={"event_id": event.event_id, "client_id": event.client_id}
            )
            return []

        snapshot = event.snapshot()
        enqueued: List[str] = []
        failed: List[str] = []

        for match in matches:
            delivery, created = await self.tracking.create_delivery(
                event, match.config_id, match.max_attempts
            )
            if not created:
                continue

            delivery_id = delivery.delivery_id
            if match.invalid_reason:
                await self.tracking.record_configuration_failure(delivery, match.invalid_reason)
                continue

            try:
                await self.producer.enqueue(
                    TaskType.DELIVERY,
                    DeliveryTaskPayload(delivery_id=delivery_id, event=snapshot),
                    target_queue=match.target_queue,
                )
            except EnqueueError as e:
                logger.error(
                    "Failed to enqueue delivery",
                    extra_data={
                        "event_id": event.event_id,
                        "delivery_id": delivery_id,
                        "error": e.message,
                    }
                )
                await self.tracking.record_configuration_failure(
                    delivery, f"enqueue failed: {e.message}"
                )
                failed.append(delivery_id)
                continue
            enqueued.append(delivery_id)

        logger.info(
            "Event published",
            extra_data={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "entity_type": event.entity_type,
                "matched": len(matches),
                "enqueued": len(enqueued),
                "failed": len(failed),
            }
        )
        if failed:
            raise PublishError(event.event_id, failed, enqueued)
        return enqueued

    async def publish_deferred(self, event: Event) -> str:
        """Hand the fan-out itself to a worker. Returns the task id."""
        return await self.producer.enqueue(
            TaskType.PROCESS_EVENT,
            ProcessEventPayload(event=event.snapshot()),
        )

    async def _match_configs(self, event: Event) -> List[MatchedConfig]:
        result = await self.db.execute(
            select(ProcessorConfig)
            .where(
                ProcessorConfig.client_id == event.client_id,
                ProcessorConfig.active.is_(True),
            )
            .order_by(ProcessorConfig.created_at, ProcessorConfig.config_id)
        )
        matches = []
        for config in result.scalars().all():
            if not config.matches(event.entity_type, event.event_type):
                continue
            matches.append(MatchedConfig(
                config_id=config.config_id,
                max_attempts=config.max_attempts,
                target_queue=config.target_queue,
                invalid_reason=self._invalid_reason(config),
            ))
        return matches

    def _invalid_reason(self, config: ProcessorConfig) -> str | None:
        try:
            validate_target(config)
        except InvalidTargetError as e:
            return e.message
        if not self.producer.is_known_queue(config.target_queue):
            return f"Invalid processor target: unknown queue '{config.target_queue}'"
        return None

    # ==================== entity helpers ====================

    async def publish_chat_session_event(
        self,
        client_id: str,
        event_type: str,
        session_id: str,
        data: dict[str, Any] | None = None,
    ) -> Event:
        return await self._publish_entity_event(
            client_id, event_type, EntityType.CHAT_SESSION, session_id, None, data
        )

    async def publish_chat_message_event(
        self,
        client_id: str,
        event_type: str,
        message_id: str,
        session_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Event:
        return await self._publish_entity_event(
            client_id, event_type, EntityType.CHAT_MESSAGE, message_id, session_id, data
        )

    async def publish_chat_suggestion_event(
        self,
        client_id: str,
        event_type: str,
        suggestion_id: str,
        message_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Event:
        return await self._publish_entity_event(
            client_id, event_type, EntityType.CHAT_SUGGESTION, suggestion_id, message_id, data
        )

    async def _publish_entity_event(
        self,
        client_id: str,
        event_type: str,
        entity_type: EntityType,
        entity_id: str,
        parent_id: str | None,
        data: dict[str, Any] | None,
    ) -> Event:
        event = Event(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            client_id=client_id,
            parent_id=parent_id,
            payload=data or {},
        )
        await self.publish_deferred(event)
        return event

    # ==================== status ====================

    async def get_event_status(self, event_id: str) -> dict[str, Any]:
        """Event summary with the state of each of its deliveries"""
        record = await self.db.get(EventRecord, event_id)
        if record is None:
            raise EventNotFoundError(event_id)

        deliveries = await self.tracking.get_deliveries_for_event(event_id)
        return {
            "event_id": record.event_id,
            "event_type": record.event_type,
            "entity_type": record.entity_type,
            "entity_id": record.entity_id,
            "client_id": record.client_id,
            "parent_id": record.parent_id,
            "occurred_at": record.occurred_at,
            "deliveries": deliveries,
        }
