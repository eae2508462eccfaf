"""Mirror a growing log file to the console, like ``tail -f``."""

import asyncio
import contextlib
import logging
import sys
from pathlib import Path
from typing import BinaryIO

from ..constants import COPY_CHUNK_SIZE, LOG_FOLLOW_INTERVAL

logger = logging.getLogger(__name__)


class LogFollower:
    """Copies bytes appended to ``path`` into ``sink`` until stopped.

    The file doesn't have to exist yet; the follower picks it up once it
    appears. Stopping is final and idempotent.
    """

    def __init__(
        self,
        path: Path,
        sink: BinaryIO | None = None,
        poll_interval: float = LOG_FOLLOW_INTERVAL,
    ) -> None:
        self.path = path
        self._sink = sink if sink is not None else sys.stderr.buffer
        self._poll_interval = poll_interval
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._stopped or self._task is not None:
            return
        self._task = asyncio.create_task(self._follow(), name=f"follow-{self.path.name}")

    async def stop(self) -> None:
        """Stop following. Output written to the file afterwards stays in the file."""
        self._stopped = True
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task

    async def _follow(self) -> None:
        while not self.path.exists():
            await asyncio.sleep(self._poll_interval)

        try:
            with open(self.path, "rb") as f:
                while True:
                    data = f.read(COPY_CHUNK_SIZE)
                    if not data:
                        await asyncio.sleep(self._poll_interval)
                        continue
                    self._sink.write(data)
                    self._sink.flush()
        except OSError as e:
            logger.debug(f"Stopped following {self.path}: {e}")
