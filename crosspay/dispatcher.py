"""
Background dispatcher — fire-and-forget work with bounded concurrency.

Used to start the target-chain leg after a source proof is accepted
without making the caller wait. The dispatcher owns the tasks; callers
get nothing back. Completion is observable only through persisted
intent state.

Guarantees:
    - dispatch() never blocks on the work itself.
    - Failures are logged, never re-raised to anyone.
    - At most ``max_concurrency`` jobs run at once.
    - drain() waits for everything in flight (tests, shutdown).

Not guaranteed: survival across restarts. Durable work is re-derived
from storage instead (SOURCE_SETTLED intents are picked up again by
the orchestrator's reconciliation sweep).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from crosspay.errors import CrosspayError

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """Runs zero-argument coroutine functions as tracked asyncio tasks.

    Args:
        max_concurrency: Upper bound on simultaneously running jobs.
    """

    def __init__(self, max_concurrency: int = 4) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._max_concurrency = max_concurrency
        self._semaphore: asyncio.Semaphore | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def dispatch(self, name: str, job: Callable[[], Awaitable[object]]) -> asyncio.Task[None]:
        """Schedule ``job`` on the running loop and return immediately.

        Args:
            name: Label used in logs and as the task name.
            job: Zero-argument coroutine function.

        Returns:
            The wrapping task (for observation only; it never raises).

        Raises:
            RuntimeError: If called outside a running event loop.
        """
        task = asyncio.get_running_loop().create_task(self._run(name, job), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, job: Callable[[], Awaitable[object]]) -> None:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)
        async with self._semaphore:
            try:
                await job()
            except CrosspayError as exc:
                logger.warning("background job %s failed: %s", name, exc)
            except asyncio.CancelledError:
                logger.info("background job %s cancelled", name)
                raise
            except Exception:
                logger.exception("background job %s crashed", name)

    async def drain(self) -> None:
        """Wait until every dispatched job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
