"""Allow running pcmd as ``python -m pcmd``."""

from .cli import app

if __name__ == "__main__":
    app()
