"""Fire-and-forget usage counting, decoupled from the ledger transaction."""

import asyncio
from typing import Protocol
from uuid import UUID

from bookkeeping.logger import get_logger, log_exception

logger = get_logger(__name__)


class UsageSink(Protocol):
    async def increment_transaction_count(self, business_id: UUID, count: int) -> None: ...


class UsageDispatcher:
    """
    Schedule usage increments without awaiting them.

    Task references are held until completion so they are not garbage
    collected mid-flight. Failures are logged from the done-callback and never
    reach the import; a lost increment only undercounts usage.
    """

    def __init__(self, sink: UsageSink):
        self._sink = sink
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, business_id: UUID, count: int) -> asyncio.Task[None] | None:
        if count <= 0:
            return None
        task = asyncio.create_task(
            self._sink.increment_transaction_count(business_id, count),
            name=f"usage-increment-{business_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Usage increment cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            log_exception(
                logger,
                exc,
                "Usage increment failed",
                level="warning",
                include_traceback=False,
                task=task.get_name(),
            )

    async def drain(self) -> None:
        """Wait for outstanding increments (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
