"""
Event API Routes
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.api.dependencies import get_task_producer
from eventrelay.api.routes.schemas import DeliveryResponse, EventDeliveriesResponse
from eventrelay.db.database import get_db
from eventrelay.domain.services.publisher_service import EventPublisher
from eventrelay.workers.producer import TaskProducer

router = APIRouter()


@router.get(
    "/{event_id}/deliveries",
    response_model=EventDeliveriesResponse,
    summary="Deliveries of an event",
    description="Returns the event and one delivery per processor it was fanned out to.",
    responses={
        200: {"description": "Event found"},
        404: {"description": "Event not found"}
    },
    tags=["Events"]
)
async def get_event_deliveries(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    producer: TaskProducer = Depends(get_task_producer),
) -> EventDeliveriesResponse:
    status = await EventPublisher(db, producer).get_event_status(event_id)
    status["deliveries"] = [DeliveryResponse.model_validate(d) for d in status["deliveries"]]
    return EventDeliveriesResponse(**status)
