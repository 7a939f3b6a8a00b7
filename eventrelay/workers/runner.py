"""
Worker process entrypoint

    python -m eventrelay.workers.runner

Builds the broker connection, producer, handlers and pool, then consumes
until SIGINT or SIGTERM. In-flight handlers finish before exit, bounded by
their queue's timeout.
"""
import asyncio
import signal

from eventrelay.core.config import settings
from eventrelay.core.logging import get_logger, setup_logging
from eventrelay.db.database import AsyncSessionLocal, engine
from eventrelay.workers.handlers import TaskHandlers, build_registry
from eventrelay.workers.pool import WorkerPool
from eventrelay.workers.producer import TaskProducer
from eventrelay.workers.queue import create_task_queue

logger = get_logger(__name__)


async def run_worker() -> None:
    task_queue = create_task_queue()
    producer = TaskProducer(task_queue)
    handlers = TaskHandlers(AsyncSessionLocal, producer)
    pool = WorkerPool(task_queue, build_registry(handlers))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, pool.stop)

    logger.info(
        "Starting worker",
        extra_data={"app_name": settings.APP_NAME, "broker": settings.TASK_BROKER_BACKEND}
    )
    try:
        await pool.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await handlers.dispatcher.aclose()
        await task_queue.close()
        await engine.dispose()
        logger.info("Worker stopped")


def main() -> None:
    setup_logging(
        level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
        json_format=not settings.DEBUG,
        app_name=settings.APP_NAME
    )
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
