from __future__ import annotations

from typing import Protocol


class TokenProvider(Protocol):
    """Bearer-token accessor owned by the credential layer."""

    async def get_token(self) -> str | None: ...

    async def refresh(self) -> str | None: ...
