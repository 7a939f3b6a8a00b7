"""
Delivery Tracking Service - the EventDelivery state machine

    pending -> in_flight -> succeeded | failed_retryable | exhausted
    failed_retryable -> pending (retry task enqueued)

Every transition is a conditional UPDATE on the current status, checked by
rowcount, so concurrent workers (possibly in different processes) can never
both move the same delivery into in_flight.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, List

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.config import settings
from eventrelay.core.exceptions import (
    DeliveryNotEligibleError,
    DeliveryNotFoundError,
    InvalidStateTransitionError,
)
from eventrelay.core.logging import get_logger
from eventrelay.core.time import utcnow
from eventrelay.db.models.event import EventRecord
from eventrelay.db.models.event_delivery import (
    AttemptOutcome,
    CLAIMABLE_STATUSES,
    DeliveryStatus,
    EventDelivery,
    EventDeliveryAttempt,
)
from eventrelay.db.models.processor_config import ProcessorConfig
from eventrelay.domain.schemas import Event
from eventrelay.domain.services.backoff import calculate_backoff_seconds

logger = get_logger(__name__)

MAX_ERROR_DETAIL_CHARS = 1000


@dataclass(frozen=True)
class DeliveryClaim:
    """Proof that the caller holds the in-flight gate for one attempt"""
    delivery_id: str
    config_id: str
    attempt_number: int
    started_at: datetime
    request_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryHistory:
    delivery: EventDelivery
    attempts: List[EventDeliveryAttempt]


def _truncate(detail: str | None) -> str | None:
    if detail is None:
        return None
    return detail[:MAX_ERROR_DETAIL_CHARS]


class DeliveryTrackingService:
    """Owns the lifecycle of EventDelivery and EventDeliveryAttempt rows"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== creation ====================

    async def store_event(self, event: Event) -> bool:
        """Insert the event if absent. Returns True when it was inserted."""
        existing = await self.db.get(EventRecord, event.event_id)
        if existing is not None:
            return False

        self.db.add(EventRecord(
            event_id=event.event_id,
            event_type=event.event_type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            client_id=event.client_id,
            parent_id=event.parent_id,
            payload=event.payload,
            occurred_at=event.occurred_at,
        ))
        try:
            await self.db.commit()
        except IntegrityError:
            # concurrent publish of the same event
            await self.db.rollback()
            return False
        return True

    async def create_delivery(
        self,
        event: Event,
        config_id: str,
        max_attempts: int | None = None,
    ) -> tuple[EventDelivery, bool]:
        """
        Create-or-fetch the delivery for (event, config).

        Returns (delivery, created). The unique constraint on
        (event_id, config_id) decides races between concurrent publishers.
        """
        max_attempts = max_attempts or settings.DELIVERY_DEFAULT_MAX_ATTEMPTS

        existing = await self._find_delivery(event.event_id, config_id)
        if existing is not None:
            return existing, False

        delivery = EventDelivery(
            event_id=event.event_id,
            config_id=config_id,
            status=DeliveryStatus.PENDING,
            attempt_count=0,
            max_attempts=max(1, max_attempts),
            request_payload=event.snapshot(),
        )
        self.db.add(delivery)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._find_delivery(event.event_id, config_id)
            if existing is None:
                raise
            return existing, False

        logger.info(
            "Delivery created",
            extra_data={
                "delivery_id": delivery.delivery_id,
                "event_id": event.event_id,
                "config_id": config_id,
            }
        )
        return delivery, True

    # ==================== in-flight gate ====================

    async def begin_attempt(self, delivery_id: str) -> DeliveryClaim | None:
        """
        Try to move the delivery into in_flight.

        Returns a claim when this caller won the gate, None when another
        worker holds it or the delivery is terminal. Raises
        DeliveryNotEligibleError when the delivery is waiting for its
        next_eligible_at.
        """
        now = utcnow()
        result = await self.db.execute(
            update(EventDelivery)
            .where(
                EventDelivery.delivery_id == delivery_id,
                EventDelivery.status.in_(CLAIMABLE_STATUSES),
                EventDelivery.attempt_count < EventDelivery.max_attempts,
                or_(
                    EventDelivery.next_eligible_at.is_(None),
                    EventDelivery.next_eligible_at <= now,
                ),
            )
            .values(
                status=DeliveryStatus.IN_FLIGHT,
                attempt_count=EventDelivery.attempt_count + 1,
                in_flight_since=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        delivery = await self._get(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)

        if result.rowcount == 1:
            return DeliveryClaim(
                delivery_id=delivery.delivery_id,
                config_id=delivery.config_id,
                attempt_number=delivery.attempt_count,
                started_at=now,
                request_payload=dict(delivery.request_payload or {}),
            )

        if (
            delivery.status in CLAIMABLE_STATUSES
            and delivery.attempt_count < delivery.max_attempts
            and delivery.next_eligible_at is not None
            and delivery.next_eligible_at > now
        ):
            raise DeliveryNotEligibleError(
                delivery_id,
                (delivery.next_eligible_at - now).total_seconds(),
            )

        logger.info(
            "Delivery not claimable, skipping",
            extra_data={
                "delivery_id": delivery_id,
                "status": delivery.status.value,
                "attempt_count": delivery.attempt_count,
            }
        )
        return None

    async def record_outcome(
        self,
        claim: DeliveryClaim,
        outcome: AttemptOutcome,
        error_detail: str | None = None,
        status_code: int | None = None,
    ) -> EventDelivery | None:
        """
        Append the attempt and release the gate.

        Fenced on the claim's attempt number: if the gate was reclaimed in
        the meantime the outcome is logged and dropped, and None is returned.
        """
        finished_at = utcnow()
        delivery = await self._get(claim.delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(claim.delivery_id)

        next_eligible_at = None
        if outcome == AttemptOutcome.SUCCESS:
            new_status = DeliveryStatus.SUCCEEDED
        elif (
            outcome == AttemptOutcome.PERMANENT_FAILURE
            or claim.attempt_number >= delivery.max_attempts
        ):
            new_status = DeliveryStatus.EXHAUSTED
        else:
            new_status = DeliveryStatus.FAILED_RETRYABLE
            delay = await self._backoff_seconds(delivery.config_id, claim.attempt_number)
            next_eligible_at = finished_at + timedelta(seconds=delay)

        result = await self.db.execute(
            update(EventDelivery)
            .where(
                EventDelivery.delivery_id == claim.delivery_id,
                EventDelivery.status == DeliveryStatus.IN_FLIGHT,
                EventDelivery.attempt_count == claim.attempt_number,
            )
            .values(
                status=new_status,
                next_eligible_at=next_eligible_at,
                in_flight_since=None,
                last_error=_truncate(error_detail) if outcome != AttemptOutcome.SUCCESS else None,
                updated_at=finished_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            logger.warning(
                "Stale delivery claim, outcome dropped",
                extra_data={
                    "delivery_id": claim.delivery_id,
                    "attempt_number": claim.attempt_number,
                    "outcome": outcome.value,
                }
            )
            return None

        self.db.add(self._build_attempt(
            claim.delivery_id,
            claim.attempt_number,
            claim.started_at,
            finished_at,
            outcome,
            error_detail,
            status_code,
        ))
        await self.db.commit()

        log = logger.info if outcome == AttemptOutcome.SUCCESS else logger.warning
        log(
            "Delivery attempt recorded",
            extra_data={
                "delivery_id": claim.delivery_id,
                "attempt_number": claim.attempt_number,
                "outcome": outcome.value,
                "status": new_status.value,
                "status_code": status_code,
                "next_eligible_at": next_eligible_at.isoformat() if next_eligible_at else None,
            }
        )
        return await self._get(claim.delivery_id)

    async def mark_requeued(self, delivery_id: str) -> bool:
        """failed_retryable -> pending once a retry task is on the broker"""
        result = await self.db.execute(
            update(EventDelivery)
            .where(
                EventDelivery.delivery_id == delivery_id,
                EventDelivery.status == DeliveryStatus.FAILED_RETRYABLE,
            )
            .values(status=DeliveryStatus.PENDING, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def refresh_pending(self, delivery_id: str) -> bool:
        """Restart the orphan clock of a pending delivery that was re-enqueued"""
        result = await self.db.execute(
            update(EventDelivery)
            .where(
                EventDelivery.delivery_id == delivery_id,
                EventDelivery.status == DeliveryStatus.PENDING,
            )
            .values(next_eligible_at=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def record_configuration_failure(
        self, delivery: EventDelivery, detail: str
    ) -> bool:
        """Exhaust a delivery that can never be attempted, with one synthetic attempt"""
        now = utcnow()
        delivery_id = delivery.delivery_id
        attempt_number = delivery.attempt_count + 1

        result = await self.db.execute(
            update(EventDelivery)
            .where(
                EventDelivery.delivery_id == delivery_id,
                EventDelivery.status.in_(CLAIMABLE_STATUSES),
                EventDelivery.attempt_count == attempt_number - 1,
            )
            .values(
                status=DeliveryStatus.EXHAUSTED,
                attempt_count=attempt_number,
                next_eligible_at=None,
                last_error=_truncate(detail),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            return False

        self.db.add(self._build_attempt(
            delivery_id, attempt_number, now, now,
            AttemptOutcome.PERMANENT_FAILURE, detail, None,
        ))
        await self.db.commit()

        logger.warning(
            "Delivery exhausted without attempt",
            extra_data={"delivery_id": delivery_id, "reason": detail}
        )
        return True

    # ==================== maintenance ====================

    async def reclaim_stale(
        self,
        grace_seconds: int | None = None,
        limit: int | None = None,
    ) -> int:
        """
        Release gates held longer than the grace period.

        The abandoned attempt counts as a transient failure. Goes through
        record_outcome, so a worker finishing at the same moment wins or
        loses cleanly.
        """
        grace = grace_seconds if grace_seconds is not None else settings.DELIVERY_INFLIGHT_GRACE_SECONDS
        cutoff = utcnow() - timedelta(seconds=grace)
        result = await self.db.execute(
            select(EventDelivery)
            .where(
                EventDelivery.status == DeliveryStatus.IN_FLIGHT,
                EventDelivery.in_flight_since < cutoff,
            )
            .order_by(EventDelivery.in_flight_since)
            .limit(limit or settings.DELIVERY_SWEEP_BATCH_SIZE)
        )
        stale = [
            DeliveryClaim(
                delivery_id=d.delivery_id,
                config_id=d.config_id,
                attempt_number=d.attempt_count,
                started_at=d.in_flight_since,
            )
            for d in result.scalars().all()
        ]

        reclaimed = 0
        for claim in stale:
            released = await self.record_outcome(
                claim,
                AttemptOutcome.TRANSIENT_FAILURE,
                error_detail=f"in-flight lease expired after {grace}s",
            )
            if released is not None:
                reclaimed += 1
        return reclaimed

    async def get_due_retries(self, limit: int | None = None) -> List[EventDelivery]:
        """failed_retryable deliveries whose backoff has elapsed"""
        now = utcnow()
        result = await self.db.execute(
            select(EventDelivery)
            .where(
                EventDelivery.status == DeliveryStatus.FAILED_RETRYABLE,
                EventDelivery.attempt_count < EventDelivery.max_attempts,
                EventDelivery.next_eligible_at <= now,
            )
            .order_by(EventDelivery.next_eligible_at)
            .limit(limit or settings.DELIVERY_SWEEP_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def get_orphaned_pending(
        self,
        older_than_seconds: int | None = None,
        limit: int | None = None,
    ) -> List[EventDelivery]:
        """pending deliveries that should have been picked up long ago"""
        age = older_than_seconds if older_than_seconds is not None else settings.DELIVERY_ORPHAN_PENDING_SECONDS
        cutoff = utcnow() - timedelta(seconds=age)
        due_at = func.coalesce(EventDelivery.next_eligible_at, EventDelivery.updated_at)
        result = await self.db.execute(
            select(EventDelivery)
            .where(
                EventDelivery.status == DeliveryStatus.PENDING,
                due_at < cutoff,
            )
            .order_by(due_at)
            .limit(limit or settings.DELIVERY_SWEEP_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def retry_now(self, delivery_id: str) -> EventDelivery:
        """Make a waiting delivery immediately eligible (manual retry)"""
        delivery = await self._get(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        if delivery.status not in CLAIMABLE_STATUSES:
            raise InvalidStateTransitionError(
                delivery_id, delivery.status.value, DeliveryStatus.PENDING.value
            )

        result = await self.db.execute(
            update(EventDelivery)
            .where(
                EventDelivery.delivery_id == delivery_id,
                EventDelivery.status.in_(CLAIMABLE_STATUSES),
                EventDelivery.attempt_count < EventDelivery.max_attempts,
            )
            .values(
                status=DeliveryStatus.PENDING,
                next_eligible_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        delivery = await self._get(delivery_id)
        if result.rowcount != 1:
            raise InvalidStateTransitionError(
                delivery_id, delivery.status.value, DeliveryStatus.PENDING.value
            )
        return delivery

    # ==================== queries ====================

    async def get_deliveries_for_event(self, event_id: str) -> List[EventDelivery]:
        result = await self.db.execute(
            select(EventDelivery)
            .where(EventDelivery.event_id == event_id)
            .order_by(EventDelivery.created_at, EventDelivery.delivery_id)
        )
        return list(result.scalars().all())

    async def get_delivery(self, delivery_id: str) -> DeliveryHistory:
        """Single delivery with its attempts, oldest first"""
        delivery = await self._get(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        result = await self.db.execute(
            select(EventDeliveryAttempt)
            .where(EventDeliveryAttempt.delivery_id == delivery_id)
            .order_by(EventDeliveryAttempt.attempt_number)
        )
        return DeliveryHistory(delivery=delivery, attempts=list(result.scalars().all()))

    async def get_delivery_stats(self) -> dict[str, int]:
        result = await self.db.execute(
            select(EventDelivery.status, func.count(EventDelivery.delivery_id))
            .group_by(EventDelivery.status)
        )
        stats = {status.value: 0 for status in DeliveryStatus}
        for status, count in result.all():
            stats[DeliveryStatus(status).value] = count
        stats["total"] = sum(stats.values())
        return stats

    async def get_processor_config(self, config_id: str) -> ProcessorConfig | None:
        return await self.db.get(ProcessorConfig, config_id)

    # ==================== helpers ====================

    async def _get(self, delivery_id: str) -> EventDelivery | None:
        # bypass the identity map: rows change under us through bulk UPDATEs
        result = await self.db.execute(
            select(EventDelivery)
            .where(EventDelivery.delivery_id == delivery_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _find_delivery(self, event_id: str, config_id: str) -> EventDelivery | None:
        result = await self.db.execute(
            select(EventDelivery).where(
                EventDelivery.event_id == event_id,
                EventDelivery.config_id == config_id,
            )
        )
        return result.scalar_one_or_none()

    async def _backoff_seconds(self, config_id: str, attempt_number: int) -> int:
        config = await self.db.get(ProcessorConfig, config_id)
        strategy = config.backoff_strategy if config else None
        base = (config.backoff_base_seconds if config else None) or settings.DELIVERY_BACKOFF_BASE_SECONDS
        cap = (config.backoff_max_seconds if config else None) or settings.DELIVERY_MAX_BACKOFF_SECONDS
        return calculate_backoff_seconds(
            strategy,
            attempt_number,
            base_seconds=base,
            max_backoff_seconds=cap,
        )

    @staticmethod
    def _build_attempt(
        delivery_id: str,
        attempt_number: int,
        started_at: datetime,
        finished_at: datetime,
        outcome: AttemptOutcome,
        error_detail: str | None,
        status_code: int | None,
    ) -> EventDeliveryAttempt:
        latency_ms = max(0, int((finished_at - started_at).total_seconds() * 1000))
        return EventDeliveryAttempt(
            delivery_id=delivery_id,
            attempt_number=attempt_number,
            started_at=started_at,
            finished_at=finished_at,
            outcome=outcome,
            error_detail=_truncate(error_detail),
            status_code=status_code,
            latency_ms=latency_ms,
        )
