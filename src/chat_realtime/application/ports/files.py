from __future__ import annotations

from typing import AsyncIterator, Protocol


class FileSource(Protocol):
    """Opaque byte stream for an attachment, supplied by the caller."""

    @property
    def name(self) -> str: ...

    def exists(self) -> bool: ...

    def size(self) -> int: ...

    def read_blocks(self, block_size: int) -> AsyncIterator[bytes]: ...
