"""Root conftest: exports .env.test before ``chat_realtime.config`` is imported."""
from __future__ import annotations

import os
from pathlib import Path

_env_test = Path(__file__).resolve().parent / ".env.test"
if _env_test.exists():
    for raw in _env_test.read_text().splitlines():
        entry = raw.strip()
        if not entry or entry.startswith("#") or "=" not in entry:
            continue
        key, _, value = entry.partition("=")
        # Variables already exported take precedence.
        os.environ.setdefault(key.strip(), value.strip().strip("'\""))
