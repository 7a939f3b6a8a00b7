"""
Periodic delivery maintenance

Recovers deliveries whose task never reached the broker or was lost there,
and releases in-flight gates abandoned by crashed workers. Every step is
a conditional update, so running it next to live workers is safe: the
worst case is a duplicate task, which the in-flight gate absorbs.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.exceptions import (
    BrokerUnavailableError,
    TaskSerializationError,
    UnknownQueueError,
)
from eventrelay.core.logging import get_logger
from eventrelay.core.time import utcnow
from eventrelay.db.models.event_delivery import DeliveryStatus, EventDelivery
from eventrelay.domain.services.delivery_tracking_service import DeliveryTrackingService
from eventrelay.workers.payloads import DeliveryTaskPayload, TaskType
from eventrelay.workers.producer import TaskProducer

logger = get_logger(__name__)


async def requeue_due_deliveries(
    db: AsyncSession,
    producer: TaskProducer,
    limit: int | None = None,
) -> dict[str, int]:
    """
    Put a task on the broker for every delivery that is waiting without one.

    - failed_retryable past next_eligible_at: the retry enqueue failed
    - pending for longer than the orphan age: the first enqueue was lost
    """
    tracking = DeliveryTrackingService(db)
    counts = {"requeued": 0, "orphans": 0, "exhausted": 0}

    due = await tracking.get_due_retries(limit)
    orphaned = await tracking.get_orphaned_pending(limit=limit)

    for delivery in due + orphaned:
        try:
            enqueued = await _enqueue_delivery(tracking, producer, delivery)
        except BrokerUnavailableError as e:
            logger.warning(
                "Broker unavailable, delivery sweep stopped",
                extra_data={"error": e.message, **counts}
            )
            break
        if not enqueued:
            counts["exhausted"] += 1
            continue

        if delivery.status == DeliveryStatus.FAILED_RETRYABLE:
            if await tracking.mark_requeued(delivery.delivery_id):
                counts["requeued"] += 1
        elif await tracking.refresh_pending(delivery.delivery_id):
            counts["orphans"] += 1

    if any(counts.values()):
        logger.info("Delivery sweep finished", extra_data=counts)
    return counts


async def _enqueue_delivery(
    tracking: DeliveryTrackingService,
    producer: TaskProducer,
    delivery: EventDelivery,
) -> bool:
    """False when the delivery can never be enqueued and was exhausted instead"""
    config = await tracking.get_processor_config(delivery.config_id)
    if config is None:
        await tracking.record_configuration_failure(delivery, "processor config not found")
        return False

    delay = 0.0
    if delivery.next_eligible_at is not None:
        delay = max(0.0, (delivery.next_eligible_at - utcnow()).total_seconds())

    try:
        await producer.enqueue(
            TaskType.DELIVERY,
            DeliveryTaskPayload(
                delivery_id=delivery.delivery_id,
                event=delivery.request_payload or {},
            ),
            target_queue=config.target_queue,
            delay_seconds=delay,
        )
    except (UnknownQueueError, TaskSerializationError) as e:
        await tracking.record_configuration_failure(delivery, f"enqueue failed: {e.message}")
        return False
    return True


async def reclaim_stale_deliveries(db: AsyncSession, grace_seconds: int | None = None) -> int:
    reclaimed = await DeliveryTrackingService(db).reclaim_stale(grace_seconds)
    if reclaimed:
        logger.warning(
            "Reclaimed stale in-flight deliveries",
            extra_data={"reclaimed": reclaimed}
        )
    return reclaimed


async def collect_delivery_stats(db: AsyncSession) -> dict[str, Any]:
    stats = await DeliveryTrackingService(db).get_delivery_stats()
    logger.info("Delivery stats", extra_data=stats)
    return stats
