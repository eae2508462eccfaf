"""Readiness polling for the SSH ControlMaster.

The poller is generic: it only knows how to call a probe on a fixed
interval with a bounded attempt count. What "ready" means is up to the
probe.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ..constants import READINESS_INTERVAL, READINESS_MAX_ATTEMPTS
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]


async def wait_until_ready(
    probe: Probe,
    interval: float = READINESS_INTERVAL,
    max_attempts: int = READINESS_MAX_ATTEMPTS,
    cancel: CancellationToken | None = None,
) -> bool:
    """Call ``probe`` until it succeeds or attempts run out.

    Args:
        probe: Async callable returning True once the peer is ready
        interval: Seconds to sleep between attempts
        max_attempts: Maximum number of probe calls
        cancel: Optional token; when it fires, polling stops early

    Returns:
        True on the first successful probe, False if attempts are
        exhausted or cancellation was requested
    """
    for attempt in range(1, max_attempts + 1):
        if await probe():
            logger.debug(f"Peer ready after {attempt} attempt(s)")
            return True

        if attempt == max_attempts:
            break

        if cancel is None:
            await asyncio.sleep(interval)
        elif await cancel.wait_for(interval):
            logger.debug("Readiness polling cancelled")
            return False

    logger.debug(f"Peer not ready after {max_attempts} attempt(s)")
    return False


def control_master_probe(ssh_exec: str, user: str, host: str) -> Probe:
    """Build a probe that asks ssh whether a ControlMaster is up.

    Runs ``ssh <user>@<host> -O check``; exit code zero means ready.

    Args:
        ssh_exec: ssh executable
        user: Remote SSH user
        host: Remote SSH host

    Returns:
        Async probe callable
    """
    cmd = [ssh_exec, f"{user}@{host}", "-O", "check"]

    async def probe() -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            logger.debug(f"{ssh_exec} not found, ControlMaster check failed")
            return False
        return await proc.wait() == 0

    return probe
