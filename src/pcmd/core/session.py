"""Session control flow: lock, wait for the ControlMaster, or just proxy.

Three modes, chosen from the run configuration:

- unlocked: run the proxy command directly
- lock: take the identity's lock and run the proxy command, or fail fast
- wait for master: take the lock and run the proxy command, or wait for
  the lock holder's SSH ControlMaster and tunnel through it
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ..config import PcmdSettings, RunConfig
from ..errors import LockHeldError, ReadinessTimeoutError
from .cancellation import CancellationSource, CancellationToken, SignalDispatcher
from .duplex import ByteSink, open_stdio
from .lock_manager import exclusive_lock
from .log_follower import LogFollower
from .readiness import control_master_probe, wait_until_ready
from .supervisor import ProxySupervisor, run_inherited

logger = logging.getLogger(__name__)

StdioFactory = Callable[[], Awaitable[tuple[asyncio.StreamReader, ByteSink]]]


async def pipe_to_proxy_command(
    config: RunConfig,
    settings: PcmdSettings,
    cancel: CancellationToken,
    stdio: StdioFactory = open_stdio,
) -> int:
    """Run the proxy command under supervision, wired to pcmd's stdio.

    Returns:
        Process exit code (0 once the command is gone, however it ended)
    """
    source, sink = await stdio()
    follower = LogFollower(config.log_file_path) if settings.log.follow else None
    supervisor = ProxySupervisor(
        command=config.command,
        log_file_path=config.log_file_path,
        grace_period=config.grace_period,
        cancel=cancel,
        log_follower=follower,
    )
    outcome = await supervisor.run(source, sink)
    logger.debug(f"Session ended: {outcome.value}")
    return 0


async def lock_or_exit(
    config: RunConfig,
    settings: PcmdSettings,
    cancel: CancellationToken,
    stdio: StdioFactory = open_stdio,
) -> int:
    """Run the proxy command if this process gets the identity's lock.

    Raises:
        LockHeldError: If another session holds the lock
    """
    with exclusive_lock(config.lock_file_path) as acquired:
        if not acquired:
            raise LockHeldError(
                f"Could not lock {config.lock_file_path}. "
                "Is there another session already in progress?"
            )
        return await pipe_to_proxy_command(config, settings, cancel, stdio)


async def lock_or_expect_control_master(
    config: RunConfig,
    settings: PcmdSettings,
    cancel: CancellationToken,
    stdio: StdioFactory = open_stdio,
) -> int:
    """Run the proxy command, or tunnel through the lock holder's ControlMaster.

    ssh doesn't create the ControlPath until the master connection is fully
    up, so a second ssh to the same host would happily start a second proxy
    command. Instead, the second pcmd waits for the master and then connects
    with ``ssh -W`` through it.

    Raises:
        ReadinessTimeoutError: If the ControlMaster never came up
    """
    with exclusive_lock(config.lock_file_path) as acquired:
        if acquired:
            return await pipe_to_proxy_command(config, settings, cancel, stdio)

        logger.info("Waiting for SSH ControlMaster...")
        identity = config.identity
        follower = LogFollower(config.log_file_path) if settings.log.follow else None
        if follower is not None:
            follower.start()
        try:
            ready = await wait_until_ready(
                control_master_probe(settings.ssh.exec, identity.user, identity.host),
                interval=settings.readiness.interval,
                max_attempts=settings.readiness.max_attempts,
                cancel=cancel,
            )
        finally:
            if follower is not None:
                await follower.stop()

        if cancel.cancelled:
            return 0
        if not ready:
            raise ReadinessTimeoutError("ControlMaster not detected")

        port = str(identity.port)
        await run_inherited(
            [settings.ssh.exec, "-W", f"localhost:{port}", "-p", port, identity.user_at_host],
            grace_period=config.grace_period,
            cancel=cancel,
        )
        return 0


async def run_session(
    config: RunConfig,
    settings: PcmdSettings,
    stdio: StdioFactory = open_stdio,
) -> int:
    """Entry point: install signal handling and run the configured mode.

    Returns:
        Process exit code
    """
    source = CancellationSource()
    async with SignalDispatcher(source, grace_period=config.grace_period):
        if config.wait_for_master:
            return await lock_or_expect_control_master(config, settings, source.token, stdio)
        if config.lock:
            return await lock_or_exit(config, settings, source.token, stdio)
        return await pipe_to_proxy_command(config, settings, source.token, stdio)
