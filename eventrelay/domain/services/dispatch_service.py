"""
Processor Dispatch Service - performs the actual delivery to a processor

http_webhook: JSON POST through httpx, guarded by a per-host circuit breaker.
amqp:         JSON message published through kombu.

Outcomes are classified, never raised:
- 2xx                                          -> success
- 4xx, malformed target                        -> permanent_failure
- 5xx, timeout, connection error, open circuit -> transient_failure
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx
from kombu import Connection, Exchange, Queue
from kombu.exceptions import KombuError

from eventrelay.core.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from eventrelay.core.config import settings
from eventrelay.core.exceptions import CircuitBreakerOpenError, InvalidTargetError
from eventrelay.core.logging import get_logger
from eventrelay.db.models.event_delivery import AttemptOutcome
from eventrelay.db.models.processor_config import ProcessorConfig, ProcessorType

logger = get_logger(__name__)

USER_AGENT = "chat-event-relay/1.0"
HTTP_METHODS = {"POST", "PUT", "PATCH"}
AUTH_TYPES = {"bearer", "basic"}
MAX_RESPONSE_CHARS = 500


@dataclass(frozen=True)
class DispatchResult:
    outcome: AttemptOutcome
    status_code: int | None = None
    error_detail: str | None = None
    response_body: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCESS


def classify_http_status(status_code: int) -> AttemptOutcome:
    if 200 <= status_code < 300:
        return AttemptOutcome.SUCCESS
    if status_code >= 500:
        return AttemptOutcome.TRANSIENT_FAILURE
    return AttemptOutcome.PERMANENT_FAILURE


def validate_target(config: ProcessorConfig) -> None:
    """
    Raise InvalidTargetError if the config can never be delivered to.

    Checked before a delivery consumes a broker slot.
    """
    target = config.target if isinstance(config.target, dict) else None
    if target is None:
        raise InvalidTargetError(config.config_id, "target must be an object")

    try:
        processor_type = ProcessorType(config.processor_type)
    except ValueError:
        raise InvalidTargetError(
            config.config_id, f"unsupported processor type: {config.processor_type}"
        ) from None

    if processor_type == ProcessorType.HTTP_WEBHOOK:
        _validate_url(config.config_id, target.get("webhook_url"), {"http", "https"}, "webhook_url")
        method = str(target.get("method", "POST")).upper()
        if method not in HTTP_METHODS:
            raise InvalidTargetError(config.config_id, f"unsupported HTTP method: {method}")
        timeout = target.get("timeout")
        if timeout is not None and (
            not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0
        ):
            raise InvalidTargetError(config.config_id, "timeout must be a positive number")
        headers = target.get("headers")
        if headers is not None and not isinstance(headers, dict):
            raise InvalidTargetError(config.config_id, "headers must be an object")
        _validate_auth(config.config_id, target.get("auth"))
        return

    url = target.get("url") or settings.PROCESSOR_AMQP_URL
    _validate_url(config.config_id, url, {"amqp", "amqps"}, "url")
    if not (target.get("routing_key") or target.get("queue")):
        raise InvalidTargetError(config.config_id, "amqp target needs routing_key or queue")


def _validate_url(config_id: str, url: Any, schemes: set[str], field: str) -> None:
    if not isinstance(url, str) or not url:
        raise InvalidTargetError(config_id, f"{field} not configured")
    parsed = urlparse(url)
    if parsed.scheme not in schemes or not parsed.netloc:
        raise InvalidTargetError(config_id, f"{field} is not a valid {'/'.join(sorted(schemes))} URL")


def _validate_auth(config_id: str, auth: Any) -> None:
    if auth is None:
        return
    if not isinstance(auth, dict) or auth.get("type") not in AUTH_TYPES:
        raise InvalidTargetError(config_id, "auth.type must be bearer or basic")
    if auth["type"] == "bearer" and not auth.get("token"):
        raise InvalidTargetError(config_id, "bearer auth needs a token")
    if auth["type"] == "basic" and not (auth.get("username") and auth.get("password") is not None):
        raise InvalidTargetError(config_id, "basic auth needs username and password")


class ProcessorDispatcher:
    """Sends one delivery attempt to its processor"""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ):
        self._http_client = http_client
        self._owns_client = http_client is None
        self.breakers = breakers or CircuitBreakerRegistry(CircuitBreakerConfig(
            failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            success_threshold=settings.CIRCUIT_BREAKER_SUCCESS_THRESHOLD,
            timeout_seconds=settings.CIRCUIT_BREAKER_TIMEOUT_SECONDS,
        ))

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def dispatch(
        self,
        config: ProcessorConfig,
        event: dict[str, Any],
        attempt_number: int,
        delivery_id: str | None = None,
    ) -> DispatchResult:
        try:
            validate_target(config)
        except InvalidTargetError as e:
            return DispatchResult(AttemptOutcome.PERMANENT_FAILURE, error_detail=e.message)

        body = {"event": event, "attempt_number": attempt_number}
        if ProcessorType(config.processor_type) == ProcessorType.AMQP:
            return await self._dispatch_amqp(config, body, delivery_id)
        return await self._dispatch_http(config, body, delivery_id)

    # ==================== http_webhook ====================

    async def _dispatch_http(
        self,
        config: ProcessorConfig,
        body: dict[str, Any],
        delivery_id: str | None,
    ) -> DispatchResult:
        target = config.target
        url = target["webhook_url"]
        breaker = self.breakers.get(urlparse(url).netloc)

        try:
            breaker.guard()
        except CircuitBreakerOpenError as e:
            return DispatchResult(AttemptOutcome.TRANSIENT_FAILURE, error_detail=e.message)

        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if delivery_id:
            headers["X-Delivery-ID"] = delivery_id
        auth = None
        auth_config = target.get("auth")
        if auth_config:
            if auth_config["type"] == "bearer":
                headers["Authorization"] = f"Bearer {auth_config['token']}"
            else:
                auth = httpx.BasicAuth(auth_config["username"], str(auth_config["password"]))
        for key, value in (target.get("headers") or {}).items():
            headers[str(key)] = str(value)

        timeout = float(target.get("timeout") or settings.PROCESSOR_HTTP_TIMEOUT_SECONDS)
        method = str(target.get("method", "POST")).upper()

        logger.debug(
            "Dispatching to HTTP webhook",
            extra_data={"config_id": config.config_id, "delivery_id": delivery_id, "host": breaker.service_name}
        )
        try:
            response = await self._client().request(
                method, url, json=body, headers=headers, auth=auth, timeout=timeout,
            )
        except httpx.TimeoutException as e:
            breaker.record_failure(f"timeout: {e}")
            return DispatchResult(
                AttemptOutcome.TRANSIENT_FAILURE,
                error_detail=f"HTTP request timed out after {timeout}s",
            )
        except httpx.RequestError as e:
            breaker.record_failure(str(e))
            return DispatchResult(
                AttemptOutcome.TRANSIENT_FAILURE,
                error_detail=f"HTTP request failed: {type(e).__name__}: {e}",
            )

        outcome = classify_http_status(response.status_code)
        response_text = (response.text or "")[:MAX_RESPONSE_CHARS]
        if outcome == AttemptOutcome.TRANSIENT_FAILURE:
            breaker.record_failure(f"HTTP {response.status_code}")
        else:
            # a 4xx still proves the host is up
            breaker.record_success()

        logger.debug(
            "HTTP webhook response",
            extra_data={
                "config_id": config.config_id,
                "delivery_id": delivery_id,
                "status_code": response.status_code,
                "outcome": outcome.value,
            }
        )
        return DispatchResult(
            outcome,
            status_code=response.status_code,
            error_detail=None if outcome == AttemptOutcome.SUCCESS else f"HTTP {response.status_code}: {response_text}",
            response_body=response_text,
        )

    # ==================== amqp ====================

    async def _dispatch_amqp(
        self,
        config: ProcessorConfig,
        body: dict[str, Any],
        delivery_id: str | None,
    ) -> DispatchResult:
        # kombu is blocking
        return await asyncio.to_thread(self._publish_amqp, config, body, delivery_id)

    def _publish_amqp(
        self,
        config: ProcessorConfig,
        body: dict[str, Any],
        delivery_id: str | None,
    ) -> DispatchResult:
        target = config.target
        url = target.get("url") or settings.PROCESSOR_AMQP_URL
        exchange_name = target.get("exchange") or ""
        queue_name = target.get("queue") or ""
        routing_key = target.get("routing_key") or queue_name
        timeout = float(target.get("timeout") or settings.PROCESSOR_HTTP_TIMEOUT_SECONDS)

        headers = {str(k): v for k, v in (target.get("headers") or {}).items()}
        if delivery_id:
            headers["delivery_id"] = delivery_id

        exchange = Exchange(exchange_name, type="direct", durable=True) if exchange_name else None
        declare = []
        if queue_name:
            declare.append(Queue(
                queue_name,
                exchange=exchange,
                routing_key=routing_key,
                durable=True,
            ))

        logger.debug(
            "Dispatching to AMQP",
            extra_data={
                "config_id": config.config_id,
                "delivery_id": delivery_id,
                "exchange": exchange_name,
                "routing_key": routing_key,
                "queue": queue_name,
            }
        )
        with Connection(url, connect_timeout=timeout) as connection:
            recoverable = (KombuError, OSError) + tuple(connection.connection_errors) + tuple(connection.channel_errors)
            try:
                producer = connection.Producer(serializer="json")
                producer.publish(
                    body,
                    exchange=exchange if exchange is not None else "",
                    routing_key=routing_key,
                    declare=declare,
                    headers=headers,
                    delivery_mode=2,
                    retry=False,
                    timeout=timeout,
                )
            except recoverable as e:
                return DispatchResult(
                    AttemptOutcome.TRANSIENT_FAILURE,
                    error_detail=f"AMQP publish failed: {type(e).__name__}: {e}",
                )

        return DispatchResult(AttemptOutcome.SUCCESS, response_body="Message published")
