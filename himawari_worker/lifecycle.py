"""Shutdown signal shared by every component of the worker.

One ShutdownSignal is created at startup. SIGTERM/SIGINT (or an operator
interrupt) set it exactly once; it is never cleared. Every blocking operation
wraps its awaitable in ``run_until_shutdown`` so it returns promptly with
ShutdownRequested instead of running to completion.

Usage:
    shutdown = ShutdownSignal()
    shutdown.install(asyncio.get_running_loop())

    response = await run_until_shutdown(client.get("/task"), shutdown)
"""

import asyncio
import signal
from collections.abc import Awaitable
from typing import Any, TypeVar

from himawari_worker.exceptions import ShutdownRequested
from himawari_worker.utils.logging import get_logger

T = TypeVar("T")

log = get_logger(__name__)

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ShutdownSignal:
    """Broadcast, one-way cancellation signal.

    Attributes:
        reason: Name of the signal (or caller-supplied reason) that triggered
            shutdown, None while running.
    """

    def __init__(self, logger: Any = None) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None
        self.log = logger if logger is not None else log

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def request(self, reason: str = "requested") -> None:
        """Start shutdown. Later calls are ignored."""
        if self._event.is_set():
            return
        self.reason = reason
        self.log.info("shutdown_requested", reason=reason)
        self._event.set()

    def handle_signal(self, signum: int) -> None:
        """Signal handler: record the signal and start shutdown."""
        signal_name = signal.Signals(signum).name
        self.log.info("shutdown_signal_received", signal=signum, signal_name=signal_name)
        self.request(signal_name)

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register SIGTERM/SIGINT handlers on the running loop."""
        for signum in HANDLED_SIGNALS:
            loop.add_signal_handler(signum, self.handle_signal, signum)

    def uninstall(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in HANDLED_SIGNALS:
            loop.remove_signal_handler(signum)


async def run_until_shutdown(awaitable: Awaitable[T], shutdown: ShutdownSignal) -> T:
    """Await ``awaitable`` unless shutdown is requested first.

    The awaitable's task is cancelled and awaited before ShutdownRequested is
    raised, so its own cleanup (finally blocks, process kills) has run.

    Raises:
        ShutdownRequested: If shutdown was requested before the awaitable finished
    """
    work = asyncio.ensure_future(awaitable)
    stop = asyncio.ensure_future(shutdown.wait())
    try:
        done, _ = await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        stop.cancel()
        await asyncio.gather(work, stop, return_exceptions=True)
        raise

    if work in done:
        stop.cancel()
        await asyncio.gather(stop, return_exceptions=True)
        return work.result()

    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise ShutdownRequested(f"interrupted by shutdown ({shutdown.reason})")


async def sleep_until_shutdown(seconds: float, shutdown: ShutdownSignal) -> bool:
    """Sleep for ``seconds`` or until shutdown, whichever comes first.

    Returns:
        True if shutdown was requested, False if the full interval elapsed.
    """
    if shutdown.is_set():
        return True
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True
