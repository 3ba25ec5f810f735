import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .observability import get_logger

logger = get_logger(__name__)


@dataclass
class ExecutionItem:
    code: str
    future: asyncio.Future
    sequence: int
    submitted_at: float = field(default=0.0)


class ExecutionScheduler:
    """Runs execute requests one at a time, strictly in submission order.

    ``execute_callback(code)`` sends the request and waits for its reply; the
    processor does not dequeue the next item until that await finishes, so at
    most one execute is ever in flight per kernel.
    """

    def __init__(self, execute_callback: Callable[[str], Awaitable[Dict[str, Any]]]):
        self.execute_callback = execute_callback
        self.queue: "asyncio.Queue[Optional[ExecutionItem]]" = asyncio.Queue()
        self.current: Optional[ExecutionItem] = None
        self._sequence = itertools.count(1)
        self._processor: Optional[asyncio.Task] = None

    @property
    def queued(self) -> int:
        return self.queue.qsize()

    def start(self):
        if self._processor is None or self._processor.done():
            self._processor = asyncio.create_task(
                self.process_queue(), name="kernel-bridge-execute-queue"
            )

    def submit(self, code: str) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        item = ExecutionItem(
            code=code,
            future=loop.create_future(),
            sequence=next(self._sequence),
            submitted_at=loop.time(),
        )
        self.queue.put_nowait(item)
        logger.debug("Queued execution", sequence=item.sequence, queue_depth=self.queue.qsize())
        return item.future

    def fail_pending(self, error: BaseException) -> int:
        """Reject every execution that has not been sent yet."""
        failed = 0
        while True:
            try:
                item = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not None and not item.future.done():
                item.future.set_exception(error)
                failed += 1
        if failed:
            logger.info("Rejected queued executions", count=failed, error=str(error))
        return failed

    async def stop(self, error: BaseException):
        self.fail_pending(error)
        if self._processor is not None and not self._processor.done():
            self._processor.cancel()
            try:
                await self._processor
            except asyncio.CancelledError:
                pass
        self._processor = None
        if self.current is not None and not self.current.future.done():
            self.current.future.set_exception(error)
        self.current = None

    async def process_queue(self):
        """Process items from the queue sequentially until a None shutdown signal."""
        while True:
            item = await self.queue.get()
            if item is None:
                break

            if item.future.done():
                # Caller gave up before the request was sent
                logger.debug("Skipping abandoned execution", sequence=item.sequence)
                continue

            self.current = item
            logger.debug("Dequeued execution", sequence=item.sequence)
            try:
                result = await self.execute_callback(item.code)
            except asyncio.CancelledError:
                # stop() settles self.current
                raise
            except Exception as e:
                self.current = None
                if not item.future.done():
                    item.future.set_exception(e)
            else:
                self.current = None
                if not item.future.done():
                    item.future.set_result(result)
