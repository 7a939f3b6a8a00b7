"""
Shared API dependencies
"""
from fastapi import Depends

from eventrelay.workers.producer import TaskProducer
from eventrelay.workers.queue import TaskQueue, create_task_queue

_task_queue: TaskQueue | None = None


def get_task_queue() -> TaskQueue:
    """One broker connection per API process"""
    global _task_queue
    if _task_queue is None:
        _task_queue = create_task_queue()
    return _task_queue


def get_task_producer(task_queue: TaskQueue = Depends(get_task_queue)) -> TaskProducer:
    return TaskProducer(task_queue)


async def close_task_queue() -> None:
    global _task_queue
    if _task_queue is not None:
        await _task_queue.close()
        _task_queue = None
