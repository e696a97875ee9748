from __future__ import annotations

import logging
import time

import jwt

logger = logging.getLogger(__name__)


class StaticTokenProvider:
    """Serves a fixed bearer token; ``refresh`` hands back the same value."""

    def __init__(self, token: str | None) -> None:
        self._token = token

    async def get_token(self) -> str | None:
        return self._token

    async def refresh(self) -> str | None:
        return self._token


def token_expiry(token: str) -> float | None:
    """Return the ``exp`` claim of a JWT, or None for opaque tokens."""
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.DecodeError:
        return None
    exp = payload.get("exp")
    return float(exp) if isinstance(exp, (int, float)) else None


def is_token_expired(token: str, *, leeway: float = 0.0, now: float | None = None) -> bool:
    expires_at = token_expiry(token)
    if expires_at is None:
        return False
    current = time.time() if now is None else now
    expired = current + leeway >= expires_at
    if expired:
        logger.debug("Bearer token expired at %s", expires_at)
    return expired
