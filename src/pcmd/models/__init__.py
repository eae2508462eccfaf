"""Pydantic data models for pcmd."""

from .identity import Identity

__all__ = [
    "Identity",
]
