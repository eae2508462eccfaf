"""Core supervision logic for pcmd.

This package contains:
- cancellation: Signal-driven cancellation token and dispatcher
- lock_manager: flock-based per-identity exclusion
- readiness: ControlMaster readiness polling
- duplex: Stream copy loops and stdio wrapping
- log_follower: Console mirror of the proxy command's log
- supervisor: Proxy command state machine with grace-period shutdown
- session: Lock / wait-for-master / unlocked control flow
"""

from .cancellation import CancellationSource, CancellationToken, SignalDispatcher
from .duplex import copy_stream, open_stdio
from .lock_manager import acquire_or_report, exclusive_lock
from .log_follower import LogFollower
from .readiness import control_master_probe, wait_until_ready
from .session import (
    lock_or_exit,
    lock_or_expect_control_master,
    pipe_to_proxy_command,
    run_session,
)
from .supervisor import ProxySupervisor, SessionOutcome, SessionState, run_inherited

__all__ = [
    "CancellationSource",
    "CancellationToken",
    "LogFollower",
    "ProxySupervisor",
    "SessionOutcome",
    "SessionState",
    "SignalDispatcher",
    "acquire_or_report",
    "control_master_probe",
    "copy_stream",
    "exclusive_lock",
    "lock_or_exit",
    "lock_or_expect_control_master",
    "open_stdio",
    "pipe_to_proxy_command",
    "run_inherited",
    "run_session",
    "wait_until_ready",
]
