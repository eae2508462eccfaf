"""pcmd: lock-aware, grace-period supervisor for SSH ProxyCommands."""

__version__ = "0.1.0"
