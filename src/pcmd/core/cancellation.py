"""Cancellation context driven by OS signals.

Instead of dying when SIGINT or SIGHUP arrives, pcmd cancels a single
shared token. Every blocking operation watches the token and must return
within the grace period after it fires.
"""

import asyncio
import contextlib
import logging
import signal
from collections.abc import Iterable

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGHUP)


class CancellationToken:
    """Read-only view of a cancellation signal."""

    def __init__(self, event: asyncio.Event) -> None:
        self._event = event

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()

    async def wait_for(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds; return True if cancelled meanwhile."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True


class CancellationSource:
    """Owner of a cancellation token. Setting it is single-assignment."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.token = CancellationToken(self._event)

    def cancel(self) -> bool:
        """Request cancellation. Returns False if it was already requested."""
        if self._event.is_set():
            return False
        self._event.set()
        return True


class SignalDispatcher:
    """Turns OS signals into a cancellation request.

    Signal handlers only enqueue the signal; a single dispatcher task owns
    the write to the cancellation source. Use as an async context manager
    so handlers are removed again on every exit path.

    Example:
        source = CancellationSource()
        async with SignalDispatcher(source, grace_period=300):
            await supervisor.run(reader, writer)
    """

    def __init__(
        self,
        source: CancellationSource,
        grace_period: float,
        signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
    ) -> None:
        self._source = source
        self._grace_period = grace_period
        self._signals = tuple(signals)
        self._queue: asyncio.Queue[signal.Signals] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def install(self) -> None:
        """Register signal handlers and start the dispatcher task."""
        self._loop = asyncio.get_running_loop()
        for sig in self._signals:
            self._loop.add_signal_handler(sig, self._queue.put_nowait, sig)
        self._task = asyncio.create_task(self._dispatch(), name="pcmd-signal-dispatcher")

    async def uninstall(self) -> None:
        """Remove signal handlers and stop the dispatcher task."""
        if self._loop is not None:
            for sig in self._signals:
                self._loop.remove_signal_handler(sig)
            self._loop = None
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _dispatch(self) -> None:
        while True:
            sig = await self._queue.get()
            if self._source.cancel():
                logger.warning(
                    f"Received {sig.name} signal, giving processes "
                    f"{self._grace_period:g} seconds to clean up..."
                )
            else:
                logger.debug(f"Received {sig.name} signal, cleanup already in progress")

    async def __aenter__(self) -> "SignalDispatcher":
        self.install()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.uninstall()
