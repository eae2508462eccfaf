"""Proxy command supervisor.

Spawns the proxy command in its own process group, forwards stdin and
stdout through pipes, and tears the command down within a bounded grace
period once proxying is over.

The only reason stdio are pipes rather than pcmd's own descriptors is so
that either half closing is observable: if one side closes, the other is
closed too, so the command can't hang on stdio after ssh has gone away.

State machine:

    SPAWNED -> RUNNING -> TERMINATED                       (command exited)
    SPAWNED -> RUNNING -> CLEANUP_REQUESTED -> TERMINATED  (stream closed / cancelled)

Once cleanup is requested both pipes are closed and the grace period
starts. If the command is still alive when it expires, its process group
gets a single SIGKILL.
"""

import asyncio
import contextlib
import logging
import os
import signal
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from ..constants import COPY_CHUNK_SIZE, EXIT_DRAIN_TIMEOUT, KILL_REAP_TIMEOUT
from ..errors import SpawnError
from .cancellation import CancellationToken
from .duplex import ByteSink, copy_stream
from .log_follower import LogFollower

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle of a supervised proxy command."""

    SPAWNED = "spawned"
    RUNNING = "running"
    CLEANUP_REQUESTED = "cleanup_requested"
    TERMINATED = "terminated"


class SessionOutcome(str, Enum):
    """How a supervised session ended."""

    NATURAL_EXIT = "natural_exit"
    EXITED_DURING_GRACE = "exited_during_grace"
    KILLED = "killed"


class CleanupTrigger(str, Enum):
    """First event observed while RUNNING."""

    CHILD_EXITED = "child_exited"
    STREAM_CLOSED = "stream_closed"
    CANCELLED = "cancelled"


class _ExitWatchingProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that reports the child's exit as soon as it is reaped.

    ``Process.wait()`` only returns once every pipe has disconnected too, so
    a grandchild holding stdout open would hide the exit.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future[None] = loop.create_future()

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(None)


class ProxySupervisor:
    """Runs one proxy command session.

    Attributes:
        command: Proxy command argv
        log_file_path: File receiving the command's stderr
        grace_period: Seconds allowed for cleanup before the process group is killed
        state: Current session state (None until spawned)
        outcome: How the session ended (None until terminated)
        pid: Process ID of the command once spawned
        returncode: Exit status once known
    """

    def __init__(
        self,
        command: list[str],
        log_file_path: Path,
        grace_period: float,
        cancel: CancellationToken,
        log_follower: LogFollower | None = None,
    ) -> None:
        self.command = command
        self.log_file_path = log_file_path
        self.grace_period = grace_period
        self.state: SessionState | None = None
        self.outcome: SessionOutcome | None = None
        self.pid: int | None = None
        self.returncode: int | None = None
        self.kill_attempted = False

        self._cancel = cancel
        self._log_follower = log_follower
        self._log_file: BinaryIO | None = None
        self._transport: asyncio.SubprocessTransport | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._exited: asyncio.Future[None] | None = None
        self._stdout_task: asyncio.Task[int] | None = None
        self._tasks: list[asyncio.Task[object]] = []

    async def run(self, source: asyncio.StreamReader, sink: ByteSink) -> SessionOutcome:
        """Spawn the command and supervise it until it is gone.

        Args:
            source: External input, forwarded to the command's stdin
            sink: External output, receiving the command's stdout

        Returns:
            How the session ended

        Raises:
            SpawnError: If the log file can't be opened or the command can't start
        """
        await self._spawn()
        try:
            trigger = await self._run_until_trigger(source, sink)
            if trigger is CleanupTrigger.CHILD_EXITED:
                await self._drain_output()
                return self._terminate(SessionOutcome.NATURAL_EXIT)

            await self._request_cleanup(trigger)
            return self._terminate(await self._wait_for_grace_period())
        finally:
            await self._teardown()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _spawn(self) -> None:
        try:
            self._log_file = open(self.log_file_path, "wb")
        except OSError as e:
            raise SpawnError(f"Could not open log file {self.log_file_path}: {e}") from e

        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.subprocess_exec(
                lambda: _ExitWatchingProtocol(limit=COPY_CHUNK_SIZE, loop=loop),
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=self._log_file,
                # New process group: SIGINT/SIGHUP sent to pcmd's group must
                # not reach the command. pcmd relays shutdown itself.
                process_group=0,
            )
        except (OSError, ValueError) as e:
            self._log_file.close()
            raise SpawnError(f"Could not start {self.command[0]}: {e}") from e

        self._transport = transport
        self._exited = protocol.exited
        self._process = asyncio.subprocess.Process(transport, protocol, loop)
        self.pid = self._process.pid
        self.state = SessionState.SPAWNED
        logger.debug(f"Started {' '.join(self.command)} with PID {self.pid}")

        if self._log_follower is not None:
            self._log_follower.start()

    async def _run_until_trigger(
        self, source: asyncio.StreamReader, sink: ByteSink
    ) -> CleanupTrigger:
        """RUNNING: wait for whichever comes first, exit, stream closure or cancellation."""
        assert self._process is not None
        assert self._exited is not None
        assert self._process.stdin is not None and self._process.stdout is not None
        self.state = SessionState.RUNNING

        stdin_task = asyncio.create_task(
            copy_stream(source, self._process.stdin, "stdin -> proxy command"),
            name="proxy-stdin",
        )
        stdout_task = asyncio.create_task(
            copy_stream(self._process.stdout, sink, "proxy command -> stdout"),
            name="proxy-stdout",
        )
        cancel_task = asyncio.create_task(self._cancel.wait(), name="proxy-cancel")
        self._stdout_task = stdout_task
        self._tasks = [stdin_task, stdout_task, cancel_task]

        done, _ = await asyncio.wait(
            {self._exited, stdin_task, stdout_task, cancel_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        # An exit observed together with anything else still wins
        if self._exited in done:
            return CleanupTrigger.CHILD_EXITED
        if cancel_task in done:
            return CleanupTrigger.CANCELLED
        return CleanupTrigger.STREAM_CLOSED

    async def _request_cleanup(self, trigger: CleanupTrigger) -> None:
        """Enter CLEANUP_REQUESTED: stop mirroring the log and close both pipes."""
        self.state = SessionState.CLEANUP_REQUESTED
        logger.debug(
            f"Cleanup requested ({trigger.value}), "
            f"giving {self.command[0]} {self.grace_period:g}s to exit"
        )

        # From here on the command's stderr only goes to the log file
        if self._log_follower is not None:
            await self._log_follower.stop()

        self._close_pipes()

    async def _wait_for_grace_period(self) -> SessionOutcome:
        assert self._exited is not None
        done, _ = await asyncio.wait({self._exited}, timeout=self.grace_period)
        if done:
            return SessionOutcome.EXITED_DURING_GRACE

        logger.warning(
            f"{self.command[0]} still running after {self.grace_period:g}s grace period, killing it"
        )
        self._kill()
        await asyncio.wait({self._exited}, timeout=KILL_REAP_TIMEOUT)
        return SessionOutcome.KILLED

    async def _drain_output(self) -> None:
        """Forward what the exited command left in its stdout pipe, then close both pipes.

        Output written before the exit is already buffered and arrives at
        once. Anything still holding the pipe open (a backgrounded helper)
        only gets EXIT_DRAIN_TIMEOUT before the pipes are closed under it.
        """
        if self._stdout_task is not None:
            await asyncio.wait({self._stdout_task}, timeout=EXIT_DRAIN_TIMEOUT)
        self._close_pipes()

    def _terminate(self, outcome: SessionOutcome) -> SessionOutcome:
        assert self._process is not None
        self.state = SessionState.TERMINATED
        self.outcome = outcome
        self.returncode = self._process.returncode
        logger.debug(f"{self.command[0]} finished: {outcome.value} (exit status {self.returncode})")
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _close_pipes(self) -> None:
        """Close our ends of the command's stdin and stdout immediately."""
        assert self._transport is not None
        for fd in (0, 1):
            pipe = self._transport.get_pipe_transport(fd)
            # Already closing after EOF or an I/O error
            if pipe is None or pipe.is_closing():
                continue
            if isinstance(pipe, asyncio.WriteTransport):
                # abort() rather than close(): don't wait for buffered stdin to flush
                pipe.abort()
            else:
                pipe.close()

    def _kill(self) -> None:
        """Best-effort SIGKILL of the command's process group. Attempted at most once."""
        assert self._process is not None
        if self.kill_attempted or self._process.returncode is not None:
            return
        self.kill_attempted = True
        try:
            os.killpg(self._process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError) as e:
            logger.debug(f"Could not kill process group {self._process.pid}: {e}")

    async def _teardown(self) -> None:
        if self._log_follower is not None:
            await self._log_follower.stop()

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        # Closing the transport kills a still-running process, so leave it
        # alone when the kill above could not be confirmed
        if self._transport is not None and self._transport.get_returncode() is not None:
            self._transport.close()

        if self._log_file is not None:
            self._log_file.close()


async def run_inherited(
    command: list[str], grace_period: float, cancel: CancellationToken
) -> int | None:
    """Run a command sharing pcmd's stdio and process group.

    The command receives terminal signals itself. If cancellation is
    requested, it gets ``grace_period`` seconds to exit before being killed.

    Returns:
        Exit status, or None if it could not be collected

    Raises:
        SpawnError: If the command can't be started
    """
    try:
        proc = await asyncio.create_subprocess_exec(*command)
    except OSError as e:
        raise SpawnError(f"Could not start {command[0]}: {e}") from e

    exit_task = asyncio.create_task(proc.wait())
    cancel_task = asyncio.create_task(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {exit_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if exit_task not in done:
            done, _ = await asyncio.wait({exit_task}, timeout=grace_period)
            if not done:
                logger.warning(f"{command[0]} still running after {grace_period:g}s, killing it")
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await asyncio.wait({exit_task}, timeout=KILL_REAP_TIMEOUT)
        return proc.returncode
    finally:
        for task in (exit_task, cancel_task):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
