"""Configuration management for pcmd."""

import os
import tomllib
from datetime import datetime
from pathlib import Path

import tomli_w
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import __version__
from .constants import (
    DEFAULT_GRACE_PERIOD,
    LOG_TIMESTAMP_FORMAT,
    PCMD_DIR,
    READINESS_INTERVAL,
    READINESS_MAX_ATTEMPTS,
    SETTINGS_FILE,
)
from .errors import SettingsError
from .models import Identity


class BuildInfo(BaseModel):
    """Version and build identifiers shown by ``pcmd --version``."""

    model_config = ConfigDict(frozen=True)

    version: str
    build: str = "dev"

    def __str__(self) -> str:
        return f"{self.version} ({self.build})"


def get_build_info() -> BuildInfo:
    """Build info for this installation; ``PCMD_BUILD`` names the build."""
    return BuildInfo(version=__version__, build=os.environ.get("PCMD_BUILD", "dev"))


class SupervisorSettings(BaseModel):
    """Proxy command supervision settings."""

    grace_period: float = Field(
        default=DEFAULT_GRACE_PERIOD,
        ge=0,
        description="Seconds given to the proxy command to clean up once proxying is complete",
    )


class ReadinessSettings(BaseModel):
    """ControlMaster readiness polling settings."""

    interval: float = Field(default=READINESS_INTERVAL, gt=0)
    max_attempts: int = Field(default=READINESS_MAX_ATTEMPTS, ge=1)


class SshSettings(BaseModel):
    """Settings for the ssh executable used for probes and nested connections."""

    exec: str = "ssh"


class LogSettings(BaseModel):
    """Console log mirroring settings."""

    follow: bool = True  # Mirror the proxy command's log to stderr while live


class PcmdSettings(BaseModel):
    """Root settings, read from .pcmd/config.toml."""

    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)
    readiness: ReadinessSettings = Field(default_factory=ReadinessSettings)
    ssh: SshSettings = Field(default_factory=SshSettings)
    log: LogSettings = Field(default_factory=LogSettings)


def get_pcmd_dir(work_dir: Path) -> Path:
    """Get the directory holding lock, log and settings files."""
    return work_dir / PCMD_DIR


def load_settings(pcmd_dir: Path) -> PcmdSettings:
    """Load settings from .pcmd/config.toml.

    Args:
        pcmd_dir: Path to .pcmd directory

    Returns:
        Loaded settings, or defaults if config.toml doesn't exist

    Raises:
        SettingsError: If the file is not valid TOML or fails validation
    """
    config_path = pcmd_dir / SETTINGS_FILE
    if not config_path.exists():
        return PcmdSettings()
    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
        return PcmdSettings.model_validate(data)
    except (OSError, tomllib.TOMLDecodeError, ValidationError) as e:
        raise SettingsError(f"Invalid settings in {config_path}: {e}") from e


def write_settings_template(pcmd_dir: Path) -> Path:
    """Write default config.toml template.

    Args:
        pcmd_dir: Path to .pcmd directory

    Returns:
        Path to the written config file
    """
    config_path = pcmd_dir / SETTINGS_FILE
    template = {
        "supervisor": {"grace_period": DEFAULT_GRACE_PERIOD},
        "readiness": {"interval": READINESS_INTERVAL, "max_attempts": READINESS_MAX_ATTEMPTS},
        "ssh": {"exec": "ssh"},
        "log": {"follow": True},
    }
    with open(config_path, "wb") as f:
        tomli_w.dump(template, f)
    return config_path


class RunConfig(BaseModel):
    """Validated, immutable configuration for one pcmd session.

    Attributes:
        work_dir: Working directory for lock files, logs, sockets, etc.
        identity: SSH identity naming the lock and log files.
        command: Proxy command argv (first element is the executable).
        grace_period: Seconds allowed for cleanup once proxying stops.
        lock: Only allow one instance of the proxy command per identity.
        wait_for_master: Wait for the SSH ControlMaster when not the lock holder.
        lock_file_path: Derived lock file path.
        log_file_path: Derived log file path for the command's stderr.
    """

    model_config = ConfigDict(frozen=True)

    work_dir: Path
    identity: Identity = Field(default_factory=Identity)
    command: list[str] = Field(min_length=1)
    grace_period: float = Field(default=DEFAULT_GRACE_PERIOD, ge=0)
    lock: bool = False
    wait_for_master: bool = False
    lock_file_path: Path
    log_file_path: Path

    @classmethod
    def create(
        cls,
        work_dir: Path,
        command: list[str],
        identity: Identity | None = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        lock: bool = False,
        wait_for_master: bool = False,
        now: datetime | None = None,
    ) -> "RunConfig":
        """Create a config, deriving lock and log file paths.

        Waiting for the master implies locking. Locked sessions share a
        stable log name per identity; unlocked sessions embed the command's
        base name and a timestamp so unrelated concurrent runs don't collide.
        """
        identity = identity or Identity()
        lock = lock or wait_for_master
        base = get_pcmd_dir(work_dir) / identity.base_name()

        if lock:
            log_name = f"{base.name}.log"
        else:
            stamp = (now or datetime.now()).strftime(LOG_TIMESTAMP_FORMAT)
            log_name = f"{base.name}.{Path(command[0]).name if command else 'none'}.{stamp}.log"

        return cls(
            work_dir=work_dir,
            identity=identity,
            command=command,
            grace_period=grace_period,
            lock=lock,
            wait_for_master=wait_for_master,
            lock_file_path=base.with_name(f"{base.name}.lock"),
            log_file_path=base.with_name(log_name),
        )
