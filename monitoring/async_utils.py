import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List


logger = logging.getLogger(__name__)


async def cancel_tasks(tasks: Iterable[Optional[asyncio.Task]]) -> None:
    """Cancel unfinished tasks and wait until every one of them has settled."""
    task_list: List[asyncio.Task] = [t for t in tasks if t is not None]
    for t in task_list:
        if not t.done():
            t.cancel()
    if not task_list:
        return
    results = await asyncio.gather(*task_list, return_exceptions=True)
    for t, result in zip(task_list, results):
        if isinstance(result, Exception):
            logger.error("Background task %s ended with %r", t.get_name(), result)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Wait on ``tasks`` until one fails or the caller is cancelled, then cancel the rest and clean up."""
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        logger.info("Run cancelled; shutting down %s tasks", len(task_list))
    finally:
        await cancel_tasks(task_list)
        if cleanup is not None:
            await cleanup()
