from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncIterator


class LocalFileSource:
    """Reads an attachment from disk without blocking the event loop."""

    def __init__(self, path: str | Path, name: str | None = None) -> None:
        self._path = Path(path)
        self._name = name or self._path.name

    @property
    def name(self) -> str:
        return self._name

    def exists(self) -> bool:
        return self._path.is_file()

    def size(self) -> int:
        return self._path.stat().st_size

    async def read_blocks(self, block_size: int) -> AsyncIterator[bytes]:
        with self._path.open("rb") as fh:
            while True:
                block = await asyncio.to_thread(fh.read, block_size)
                if not block:
                    break
                yield block


class BytesSource:
    """In-memory attachment, e.g. a generated thumbnail."""

    def __init__(self, name: str, data: bytes) -> None:
        self._name = name
        self._data = data

    @property
    def name(self) -> str:
        return self._name

    def exists(self) -> bool:
        return True

    def size(self) -> int:
        return len(self._data)

    async def read_blocks(self, block_size: int) -> AsyncIterator[bytes]:
        for offset in range(0, len(self._data), block_size):
            yield self._data[offset:offset + block_size]
