"""pcmd errors."""


class PcmdError(Exception):
    """Base exception for pcmd failures reported to the user."""


class LockError(PcmdError):
    """Raised when the lock file cannot be opened or locked."""


class LockHeldError(PcmdError):
    """Raised when another session holds the lock and no fallback was requested."""


class SpawnError(PcmdError):
    """Raised when the proxy command or its stdio cannot be set up."""


class ReadinessTimeoutError(PcmdError):
    """Raised when the peer never became ready within the attempt budget."""


class SettingsError(PcmdError):
    """Raised when .pcmd/config.toml can't be parsed or holds invalid values."""
