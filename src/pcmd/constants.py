"""Constants for pcmd."""

# Directory (under the workdir) holding lock, log and settings files
PCMD_DIR = ".pcmd"
SETTINGS_FILE = "config.toml"
BASE_NAME = "pcmd"

DEFAULT_SSH_PORT = 22

# Seconds given to the proxy command to clean up after proxying stops
DEFAULT_GRACE_PERIOD = 300.0

# ControlMaster readiness polling (~100s total)
READINESS_INTERVAL = 0.25
READINESS_MAX_ATTEMPTS = 400

# Log follower poll interval (seconds)
LOG_FOLLOW_INTERVAL = 0.1

# Seconds to wait for the kernel to reap a process group after SIGKILL
KILL_REAP_TIMEOUT = 5.0

# Seconds to keep forwarding stdout after the command exits on its own
EXIT_DRAIN_TIMEOUT = 0.5

COPY_CHUNK_SIZE = 64 * 1024

# Timestamp embedded in unlocked log file names
LOG_TIMESTAMP_FORMAT = "%Y-%m-%d-%H.%M.%S.%f"
