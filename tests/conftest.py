"""Shared test fixtures for pcmd tests."""

import asyncio
import os
from collections.abc import Generator
from pathlib import Path

import pytest
from typer.testing import CliRunner

from pcmd.core import CancellationSource


@pytest.fixture
def runner() -> CliRunner:
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def work_dir(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a workdir with a .pcmd directory.

    Restores the cwd afterwards, since ``pcmd run`` changes into its workdir.
    """
    (tmp_path / ".pcmd").mkdir()
    original_cwd = os.getcwd()
    try:
        yield tmp_path
    finally:
        os.chdir(original_cwd)


@pytest.fixture
def cancel_source() -> CancellationSource:
    """Fresh cancellation source."""
    return CancellationSource()


class CollectingSink:
    """In-memory stand-in for pcmd's stdout stream."""

    def __init__(self, fail_after: int | None = None) -> None:
        self.data = bytearray()
        self.fail_after = fail_after

    def write(self, data: bytes) -> None:
        self.data.extend(data)

    async def drain(self) -> None:
        if self.fail_after is not None and len(self.data) >= self.fail_after:
            raise BrokenPipeError("sink closed")


class ClosedSink(CollectingSink):
    """A sink whose reader has gone away."""

    def write(self, data: bytes) -> None:
        pass

    async def drain(self) -> None:
        raise BrokenPipeError("sink closed")


def make_source(data: bytes = b"", eof: bool = False) -> asyncio.StreamReader:
    """Build a stream reader standing in for pcmd's stdin."""
    reader = asyncio.StreamReader()
    if data:
        reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


@pytest.fixture
def sink() -> CollectingSink:
    """Sink collecting everything written to it."""
    return CollectingSink()


@pytest.fixture
def closed_sink() -> ClosedSink:
    """Sink whose every drain fails with a broken pipe."""
    return ClosedSink()


@pytest.fixture
def source_factory():
    """Factory for stdin stand-ins: ``source_factory(data=b"...", eof=True)``."""
    return make_source
