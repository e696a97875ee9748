from __future__ import annotations

from typing import NewType

UploadId = NewType("UploadId", str)
