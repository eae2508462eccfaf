"""Stream copy loops between pcmd's stdio and the proxy command's pipes."""

import asyncio
import logging
import sys
from typing import Protocol

from ..constants import COPY_CHUNK_SIZE
from ..errors import SpawnError

logger = logging.getLogger(__name__)


class ByteSink(Protocol):
    """The writer half of an asyncio stream pair."""

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


async def copy_stream(reader: asyncio.StreamReader, writer: ByteSink, label: str) -> int:
    """Copy bytes from ``reader`` to ``writer`` until EOF or an I/O error.

    I/O errors end the copy exactly like EOF does; the caller only cares
    that this direction is finished.

    Args:
        reader: Source stream
        writer: Destination stream
        label: Direction name used in log messages

    Returns:
        Number of bytes copied
    """
    copied = 0
    try:
        while True:
            chunk = await reader.read(COPY_CHUNK_SIZE)
            if not chunk:
                logger.debug(f"{label}: end of stream after {copied} bytes")
                break
            writer.write(chunk)
            await writer.drain()
            copied += len(chunk)
    except OSError as e:
        logger.debug(f"{label}: closed after {copied} bytes ({e!r})")
    return copied


async def open_stdio() -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Wrap this process's stdin and stdout as asyncio streams.

    stdin and stdout must be pipes, sockets or terminals, which is what
    ssh hands a ProxyCommand.

    Raises:
        SpawnError: If either stream can't be driven by the event loop
    """
    loop = asyncio.get_running_loop()

    reader = asyncio.StreamReader(limit=COPY_CHUNK_SIZE)
    try:
        read_transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), sys.stdin.buffer
        )
    except ValueError as e:
        raise SpawnError(f"stdin must be a pipe, socket or terminal: {e}") from e

    try:
        transport, protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, sys.stdout.buffer
        )
    except ValueError as e:
        read_transport.close()
        raise SpawnError(f"stdout must be a pipe, socket or terminal: {e}") from e

    writer = asyncio.StreamWriter(transport, protocol, None, loop)
    return reader, writer
