from __future__ import annotations

from dataclasses import dataclass

from chat_realtime.domain.value_objects.enums import UploadStatus
from chat_realtime.domain.value_objects.ids import UploadId


@dataclass(slots=True)
class ChunkedUpload:
    """Mutable progress record for one file transfer."""

    upload_id: UploadId
    room_id: int
    file_name: str
    content_type: str
    total_size: int
    chunk_size: int
    total_chunks: int
    current_chunk_index: int = 0
    status: UploadStatus = UploadStatus.PREPARING
    server_upload_id: str | None = None
    id_is_client_generated: bool = False
    cancel_requested: bool = False
    attachment_url: str | None = None

    @property
    def progress(self) -> float:
        if self.total_chunks == 0:
            return 0.0
        return self.current_chunk_index / self.total_chunks

    @property
    def is_finished(self) -> bool:
        return self.status in (
            UploadStatus.COMPLETED,
            UploadStatus.FAILED,
            UploadStatus.CANCELLED,
        )

    def matches_id(self, upload_id: str | None) -> bool:
        return upload_id is not None and upload_id in (self.upload_id, self.server_upload_id)
