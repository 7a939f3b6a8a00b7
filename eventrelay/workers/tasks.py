"""
Celery tasks for periodic delivery maintenance

Each task runs its coroutine on a fresh event loop with its own database
engine and broker connection.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from eventrelay.core.logging import get_logger, set_correlation_id
from eventrelay.db.database import get_task_session
from eventrelay.workers import maintenance
from eventrelay.workers.celery_app import celery_app
from eventrelay.workers.producer import TaskProducer
from eventrelay.workers.queue import create_task_queue

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="eventrelay.workers.tasks.requeue_due_deliveries")
def requeue_due_deliveries():
    """Re-enqueue deliveries that are waiting without a task on the broker"""

    async def _requeue():
        # the broker client is bound to this task's loop
        task_queue = create_task_queue()
        try:
            async with get_task_session() as db:
                return await maintenance.requeue_due_deliveries(db, TaskProducer(task_queue))
        finally:
            await task_queue.close()

    return run_async(_requeue())


@celery_app.task(name="eventrelay.workers.tasks.reclaim_stale_deliveries")
def reclaim_stale_deliveries():
    """Release in-flight gates held past the grace period"""

    async def _reclaim():
        async with get_task_session() as db:
            reclaimed = await maintenance.reclaim_stale_deliveries(db)
            return {"reclaimed": reclaimed}

    return run_async(_reclaim())


@celery_app.task(name="eventrelay.workers.tasks.log_delivery_stats")
def log_delivery_stats():
    async def _stats():
        async with get_task_session() as db:
            return await maintenance.collect_delivery_stats(db)

    return run_async(_stats())
