"""Static table of file types accepted for chunked upload."""
from __future__ import annotations

from pathlib import PurePath

from chat_realtime.domain.value_objects.enums import FileCategory

SUPPORTED_TYPES: dict[str, tuple[FileCategory, str]] = {
    "jpg": (FileCategory.IMAGE, "image/jpeg"),
    "jpeg": (FileCategory.IMAGE, "image/jpeg"),
    "png": (FileCategory.IMAGE, "image/png"),
    "gif": (FileCategory.IMAGE, "image/gif"),
    "webp": (FileCategory.IMAGE, "image/webp"),
    "bmp": (FileCategory.IMAGE, "image/bmp"),
    "svg": (FileCategory.IMAGE, "image/svg+xml"),
    "mp4": (FileCategory.VIDEO, "video/mp4"),
    "mpeg": (FileCategory.VIDEO, "video/mpeg"),
    "webm": (FileCategory.VIDEO, "video/webm"),
    "mov": (FileCategory.VIDEO, "video/quicktime"),
    "avi": (FileCategory.VIDEO, "video/x-msvideo"),
    "mkv": (FileCategory.VIDEO, "video/x-matroska"),
    "mp3": (FileCategory.AUDIO, "audio/mpeg"),
    "wav": (FileCategory.AUDIO, "audio/wav"),
    "ogg": (FileCategory.AUDIO, "audio/ogg"),
    "aac": (FileCategory.AUDIO, "audio/aac"),
    "m4a": (FileCategory.AUDIO, "audio/mp4"),
    "flac": (FileCategory.AUDIO, "audio/flac"),
    "pdf": (FileCategory.DOCUMENT, "application/pdf"),
    "doc": (FileCategory.DOCUMENT, "application/msword"),
    "docx": (
        FileCategory.DOCUMENT,
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ),
    "xls": (FileCategory.DOCUMENT, "application/vnd.ms-excel"),
    "xlsx": (
        FileCategory.DOCUMENT,
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ),
    "ppt": (FileCategory.DOCUMENT, "application/vnd.ms-powerpoint"),
    "pptx": (
        FileCategory.DOCUMENT,
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ),
    "txt": (FileCategory.DOCUMENT, "text/plain"),
    "csv": (FileCategory.DOCUMENT, "text/csv"),
    "json": (FileCategory.DOCUMENT, "application/json"),
    "xml": (FileCategory.DOCUMENT, "application/xml"),
    "zip": (FileCategory.ARCHIVE, "application/zip"),
    "rar": (FileCategory.ARCHIVE, "application/x-rar-compressed"),
    "7z": (FileCategory.ARCHIVE, "application/x-7z-compressed"),
    "tar": (FileCategory.ARCHIVE, "application/x-tar"),
    "gz": (FileCategory.ARCHIVE, "application/gzip"),
}

# Legacy upper-case content types older servers still send.
LEGACY_CONTENT_TYPES = frozenset({"IMAGE", "VIDEO", "AUDIO", "FILE"})

SUPPORTED_MIME_TYPES = frozenset(mime for _, mime in SUPPORTED_TYPES.values())


def file_extension(file_name: str) -> str:
    return PurePath(file_name).suffix.lstrip(".").lower()


def lookup(file_name: str) -> tuple[FileCategory, str] | None:
    return SUPPORTED_TYPES.get(file_extension(file_name))
