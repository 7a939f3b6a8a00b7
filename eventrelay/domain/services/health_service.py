"""
Health checks for the API process

- liveness: the process answers (no dependency checks)
- readiness: database and task broker are reachable
"""
from typing import Any, Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.logging import get_logger
from eventrelay.workers.queue import TaskQueue

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# no infrastructure details in responses
_ERROR_DB = "error: db_unavailable"
_ERROR_BROKER = "error: broker_unavailable"


async def _check_db(session_factory: Callable[[], AsyncSession]) -> str:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_broker(task_queue: TaskQueue) -> str:
    try:
        if await task_queue.ping():
            return _CHECK_OK
        logger.warning("Task broker did not answer ping")
    except Exception as e:
        logger.warning("Task broker health check failed", extra_data={"error": str(e)})
    return _ERROR_BROKER


async def check_readiness(
    session_factory: Callable[[], AsyncSession],
    task_queue: TaskQueue,
) -> dict[str, Any]:
    """
    Returns {"status": "healthy" | "degraded", "db": ..., "broker": ...}
    """
    checks = {
        "db": await _check_db(session_factory),
        "broker": await _check_broker(task_queue),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED, **checks}
