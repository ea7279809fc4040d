"""Async byte-stream helpers used by adapters and composite operations"""

import asyncio
import tempfile
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterator
from typing import IO

import aiofiles

DEFAULT_CHUNK_SIZE = 1024 * 1024
SPOOL_MEMORY_LIMIT = 8 * 1024 * 1024


async def iter_file(path: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Stream a local file through aiofiles."""
    async with aiofiles.open(path, "rb") as f:
        while chunk := await f.read(chunk_size):
            yield chunk


async def iter_sync_file(fileobj: IO[bytes], chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Stream a blocking file object, reading each chunk in a worker thread."""
    while chunk := await asyncio.to_thread(fileobj.read, chunk_size):
        yield chunk


async def write_to_file(stream: AsyncIterable[bytes], path: str) -> int:
    """Drain a stream into a local file, returning the byte count."""
    written = 0
    async with aiofiles.open(path, "wb") as f:
        async for chunk in stream:
            await f.write(chunk)
            written += len(chunk)
    return written


async def spool(stream: AsyncIterable[bytes], max_memory: int = SPOOL_MEMORY_LIMIT) -> tuple[IO[bytes], int]:
    """
    Drain a stream into a SpooledTemporaryFile rewound to the start.

    Small payloads stay in memory, larger ones roll over to disk.
    The caller owns and must close the returned file.
    """
    spooled = tempfile.SpooledTemporaryFile(max_size=max_memory)  # noqa: SIM115
    size = 0
    try:
        async for chunk in stream:
            await asyncio.to_thread(spooled.write, chunk)
            size += len(chunk)
        spooled.seek(0)
    except BaseException:
        spooled.close()
        raise
    return spooled, size


def iter_chunks(fileobj: IO[bytes], chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    while chunk := fileobj.read(chunk_size):
        yield chunk


async def counted(
    stream: AsyncIterable[bytes],
    on_chunk: Callable[[int], None],
) -> AsyncIterator[bytes]:
    """Pass chunks through while reporting each chunk's length."""
    async for chunk in stream:
        on_chunk(len(chunk))
        yield chunk
