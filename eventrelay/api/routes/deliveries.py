"""
Delivery API Routes

Read-only views of delivery state plus a manual retry.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.api.dependencies import get_task_producer
from eventrelay.api.routes.schemas import (
    DeliveryAttemptResponse,
    DeliveryDetailResponse,
    DeliveryResponse,
    DeliveryStatsResponse,
    RetryResponse,
)
from eventrelay.core.logging import get_logger
from eventrelay.db.database import get_db
from eventrelay.domain.services.delivery_tracking_service import DeliveryTrackingService
from eventrelay.workers.payloads import DeliveryTaskPayload, TaskType
from eventrelay.workers.producer import TaskProducer

logger = get_logger(__name__)

router = APIRouter()


# declared before /{delivery_id} so "stats" is not taken for an id
@router.get(
    "/stats",
    response_model=DeliveryStatsResponse,
    summary="Delivery counts per status",
    tags=["Deliveries"]
)
async def get_delivery_stats(
    db: AsyncSession = Depends(get_db)
) -> DeliveryStatsResponse:
    stats = await DeliveryTrackingService(db).get_delivery_stats()
    return DeliveryStatsResponse(**stats)


@router.get(
    "/{delivery_id}",
    response_model=DeliveryDetailResponse,
    summary="Get delivery by ID",
    description="Returns the delivery with every attempt made so far, oldest first.",
    responses={
        200: {"description": "Delivery found"},
        404: {"description": "Delivery not found"}
    },
    tags=["Deliveries"]
)
async def get_delivery(
    delivery_id: str,
    db: AsyncSession = Depends(get_db)
) -> DeliveryDetailResponse:
    history = await DeliveryTrackingService(db).get_delivery(delivery_id)
    return DeliveryDetailResponse(
        **DeliveryResponse.model_validate(history.delivery).model_dump(),
        attempts=[DeliveryAttemptResponse.model_validate(a) for a in history.attempts],
    )


@router.post(
    "/{delivery_id}/retry",
    response_model=RetryResponse,
    summary="Retry a delivery now",
    description=(
        "Makes a waiting delivery immediately eligible and enqueues a delivery task. "
        "Succeeded and exhausted deliveries cannot be retried."
    ),
    responses={
        200: {"description": "Delivery enqueued"},
        404: {"description": "Delivery not found"},
        409: {"description": "Delivery is in flight or terminal"},
        503: {"description": "Task broker unavailable"}
    },
    tags=["Deliveries"]
)
async def retry_delivery(
    delivery_id: str,
    db: AsyncSession = Depends(get_db),
    producer: TaskProducer = Depends(get_task_producer),
) -> RetryResponse:
    tracking = DeliveryTrackingService(db)
    delivery = await tracking.retry_now(delivery_id)
    config = await tracking.get_processor_config(delivery.config_id)

    # an enqueue failure leaves the delivery pending for the maintenance sweep
    task_id = await producer.enqueue(
        TaskType.DELIVERY,
        DeliveryTaskPayload(delivery_id=delivery.delivery_id, event=delivery.request_payload or {}),
        target_queue=config.target_queue if config else None,
    )
    logger.info(
        "Manual delivery retry enqueued",
        extra_data={"delivery_id": delivery_id, "task_id": task_id}
    )
    return RetryResponse(
        success=True,
        task_id=task_id,
        delivery=DeliveryResponse.model_validate(delivery),
    )
