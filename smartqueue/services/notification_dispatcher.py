"""
Ordered background execution of notifier handlers.

Each key (one per service point and date) gets its own FIFO queue and at most
one worker task, so handlers for the same point run in the order their
mutations committed while different points proceed independently. A worker
exits once its queue is empty; the next dispatch for that key starts a new
one.
"""

import asyncio
from collections.abc import Awaitable, Callable

from smartqueue.infrastructure.observability.logging import (
    get_logger,
    operation_context,
    reset_context,
)

logger = get_logger(__name__)

Handler = Callable[[], Awaitable[None]]


class NotificationDispatcher:
    def __init__(self, settling_delay_seconds: float = 0.0):
        self.settling_delay_seconds = settling_delay_seconds
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._closed = False

    def dispatch(self, key: str, event: str, handler: Handler) -> None:
        """Queue ``handler`` behind earlier work for ``key``; never blocks the caller."""
        if self._closed:
            logger.warning(
                "Dispatcher closed, dropping notifier event", dispatch_key=key, event_name=event
            )
            return

        queue = self._queues.get(key)
        if queue is None:
            queue = self._queues[key] = asyncio.Queue()
        queue.put_nowait((event, handler))

        worker = self._workers.get(key)
        if worker is None or worker.done():
            self._workers[key] = asyncio.create_task(self._run(key, queue))

    async def _run(self, key: str, queue: asyncio.Queue) -> None:
        # The task copied the context of whichever operation dispatched first
        reset_context()
        while True:
            if queue.empty():
                # No await between the check and the removal, so dispatch() cannot
                # enqueue onto a queue that has lost its worker
                self._queues.pop(key, None)
                self._workers.pop(key, None)
                return

            event, handler = queue.get_nowait()
            try:
                if self.settling_delay_seconds > 0:
                    await asyncio.sleep(self.settling_delay_seconds)
                with operation_context(f"notify_{event}", dispatch_key=key):
                    await handler()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Notifier handler failed", dispatch_key=key, event_name=event)
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued handler has run."""
        while self._queues:
            await asyncio.gather(*(queue.join() for queue in list(self._queues.values())))
            # Let finished workers remove their queues
            await asyncio.sleep(0)

    async def close(self) -> None:
        self._closed = True
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        logger.info("Notification dispatcher closed", cancelled=len(workers))

    @property
    def pending(self) -> int:
        return sum(queue.qsize() for queue in self._queues.values())
