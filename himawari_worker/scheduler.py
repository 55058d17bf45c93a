"""Worker-pool scheduler: the polling loop that feeds task pipelines.

State machine per polling cycle:

    1. Admit    - wait for a free slot (asyncio.Semaphore) or shutdown
    2. Acquire  - GET /task; on success dispatch the pipeline as its own asyncio
                  task which releases the slot when it ends; on failure release
                  the slot immediately
    3. Backoff  - success resets the wait interval, failure doubles it up to
                  the ceiling (next_interval)
    4. Wait     - sleep the interval, waking early on shutdown

Once shutdown is requested no new acquisition starts. The scheduler then
drains: it waits for every dispatched pipeline to finish its own cleanup.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from himawari_worker.clients.coordinator import CoordinatorClient
from himawari_worker.exceptions import (
    NoWorkAvailable,
    ProtocolViolation,
    ShutdownRequested,
    TransportError,
)
from himawari_worker.lifecycle import ShutdownSignal, run_until_shutdown, sleep_until_shutdown
from himawari_worker.schemas.task import Task
from himawari_worker.utils.logging import get_logger

log = get_logger(__name__)


def next_interval(current: float, ceiling: float) -> float:
    """Backoff law after a failed acquisition: min(2w, ceiling).

    Example:
        >>> next_interval(1.0, 1000.0)
        2.0
        >>> next_interval(800.0, 1000.0)
        1000.0
    """
    return min(current * 2, ceiling)


class Backoff:
    """Wait interval between acquisitions.

    Attributes:
        initial: Interval after a successful acquisition
        ceiling: Upper bound for the interval
        current: Interval the scheduler sleeps next
    """

    def __init__(self, initial: float = 1.0, ceiling: float = 1000.0) -> None:
        if initial <= 0:
            raise ValueError(f"initial interval must be positive, got: {initial}")
        if ceiling < initial:
            raise ValueError(f"ceiling {ceiling} is smaller than initial interval {initial}")
        self.initial = initial
        self.ceiling = ceiling
        self.current = initial

    def success(self) -> float:
        self.current = self.initial
        return self.current

    def failure(self) -> float:
        self.current = next_interval(self.current, self.ceiling)
        return self.current


class WorkerPool:
    """Bounded-concurrency polling loop.

    Attributes:
        pool_size: Maximum number of pipelines holding a slot at once
        in_flight: Pipelines currently holding a slot
        peak_in_flight: Highest in_flight value observed
        cycles: Completed polling cycles
    """

    def __init__(
        self,
        client: CoordinatorClient,
        run_pipeline: Callable[[Task], Awaitable[Any]],
        shutdown: ShutdownSignal,
        pool_size: int = 1,
        backoff: Backoff | None = None,
        logger: Any = None,
    ) -> None:
        if pool_size < 1:
            raise ValueError(f"pool_size must be at least 1, got: {pool_size}")
        self.client = client
        self.run_pipeline = run_pipeline
        self.shutdown = shutdown
        self.pool_size = pool_size
        self.backoff = backoff or Backoff()
        self.log = logger if logger is not None else log
        self.in_flight = 0
        self.peak_in_flight = 0
        self.cycles = 0
        self._slots = asyncio.Semaphore(pool_size)
        self._pipelines: set[asyncio.Task[None]] = set()

    async def run(self) -> None:
        """Poll until shutdown, then wait for dispatched pipelines to drain."""
        self.log.info("worker_pool_started", pool_size=self.pool_size)
        try:
            while await self.run_cycle():
                pass
        finally:
            await self.drain()
        self.log.info("worker_pool_stopped", cycles=self.cycles)

    async def run_cycle(self) -> bool:
        """Run one admit -> acquire -> backoff -> wait cycle.

        Returns:
            False once shutdown has been requested, True otherwise.
        """
        if not await self._admit():
            return False

        try:
            task = await run_until_shutdown(self.client.acquire_task(), self.shutdown)
        except ShutdownRequested:
            self._slots.release()
            return False
        except NoWorkAvailable as e:
            self._slots.release()
            wait = self.backoff.failure()
            self.log.info("no_work_available", status_code=e.status_code, next_wait=wait)
        except ProtocolViolation as e:
            self._slots.release()
            wait = self.backoff.failure()
            self.log.warning("task_protocol_violation", error=str(e), next_wait=wait)
        except TransportError as e:
            self._slots.release()
            wait = self.backoff.failure()
            self.log.warning("task_acquire_failed", error=str(e), next_wait=wait)
        else:
            self._dispatch(task)
            wait = self.backoff.success()
            self.log.info(
                "task_acquired",
                **task.log_fields(),
                command=task.command,
                arguments=list(task.arguments),
                preset=task.preset_payload,
            )

        self.cycles += 1
        return not await sleep_until_shutdown(wait, self.shutdown)

    async def _admit(self) -> bool:
        """Take a slot, or return False if shutdown comes first."""
        try:
            await run_until_shutdown(self._slots.acquire(), self.shutdown)
        except ShutdownRequested:
            return False
        return True

    def _dispatch(self, task: Task) -> None:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        pipeline = asyncio.create_task(self._run_and_release(task), name=f"pipeline-{task.id}")
        self._pipelines.add(pipeline)
        pipeline.add_done_callback(self._pipelines.discard)

    async def _run_and_release(self, task: Task) -> None:
        try:
            await self.run_pipeline(task)
        except Exception as e:
            self.log.error(
                "task_pipeline_crashed",
                task_id=task.id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
        finally:
            self.in_flight -= 1
            self._slots.release()

    async def drain(self) -> None:
        """Wait for every dispatched pipeline to finish."""
        if not self._pipelines:
            return
        self.log.info("worker_pool_draining", in_flight=len(self._pipelines))
        await asyncio.gather(*self._pipelines, return_exceptions=True)
