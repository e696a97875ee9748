"""Sequential base64 chunk upload over the broker with two-phase id assignment."""
from __future__ import annotations

import asyncio
import base64
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from pydantic import ValidationError as PayloadError

from chat_realtime.application.exceptions import (
    AppError,
    ProtocolError,
    TransportFailure,
    UploadCancelled,
    UploadFailed,
    UploadTimeout,
    ValidationError,
)
from chat_realtime.application.ports.broker import BrokerSession
from chat_realtime.application.ports.files import FileSource
from chat_realtime.domain.entities.upload import ChunkedUpload
from chat_realtime.domain.value_objects.enums import UploadStatus
from chat_realtime.domain.value_objects.file_types import (
    LEGACY_CONTENT_TYPES,
    SUPPORTED_MIME_TYPES,
    lookup,
)
from chat_realtime.domain.value_objects.ids import UploadId
from chat_realtime.infrastructure.stomp.frame import StompFrame
from chat_realtime.infrastructure.stomp.protocol import (
    ERRORS_QUEUE,
    FILES_ACCEPTED_QUEUE,
    FILES_COMPLETED_QUEUE,
    FILES_PROGRESS_QUEUE,
    ChunkAcceptedReply,
    FileChunkPayload,
    UploadCompletedNotice,
    UploadErrorNotice,
    UploadProgressNotice,
)
from chat_realtime.services.outbound_dispatcher import OutboundDispatcher
from chat_realtime.services.subscription_registry import SubscriptionHandle, SubscriptionRegistry

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
CLIENT_ID_PREFIX = "client-"

ProgressCallback = Callable[[float], Awaitable[None] | None]
CompleteCallback = Callable[[str], Awaitable[None] | None]
ErrorCallback = Callable[[str], Awaitable[None] | None]


def validate_upload(source: FileSource, content_type: str | None, max_size: int) -> str:
    """Check the file before any network call; returns the content type to send."""
    if not source.exists():
        raise ValidationError(f"File not found: {source.name}")
    size = source.size()
    if size <= 0:
        raise ValidationError(f"File is empty: {source.name}")
    if size > max_size:
        raise ValidationError(
            f"File too large: {size} bytes (max {max_size} bytes)"
        )
    known = lookup(source.name)
    if known is None:
        raise ValidationError(f"Unsupported file type: {source.name}")
    _, table_mime = known
    if content_type is None:
        return table_mime
    if (
        content_type == table_mime
        or content_type in SUPPORTED_MIME_TYPES
        or content_type.upper() in LEGACY_CONTENT_TYPES
    ):
        return content_type
    raise ValidationError(f"Unsupported content type {content_type!r} for {source.name}")


def count_chunks(size: int, chunk_size: int) -> int:
    return -(-size // chunk_size)


async def iter_chunks(source: FileSource, chunk_size: int) -> AsyncIterator[bytes]:
    """Re-slice the source's blocks so every chunk but the last is full size."""
    buffer = bytearray()
    async for block in source.read_blocks(chunk_size):
        buffer.extend(block)
        while len(buffer) >= chunk_size:
            yield bytes(buffer[:chunk_size])
            del buffer[:chunk_size]
    if buffer:
        yield bytes(buffer)


@dataclass(eq=False)
class _Session:
    upload: ChunkedUpload
    source: FileSource
    accepted: asyncio.Future[str]
    outcome: asyncio.Future[str]
    on_progress: ProgressCallback | None = None
    on_complete: CompleteCallback | None = None
    on_error: ErrorCallback | None = None
    broker_progress: bool = False
    error: AppError | None = None
    task: asyncio.Task[str | None] | None = field(default=None, repr=False)


class UploadHandle:
    """Caller's view of one running upload."""

    def __init__(self, coordinator: ChunkedTransferCoordinator, session: _Session) -> None:
        self._coordinator = coordinator
        self._session = session

    @property
    def upload_id(self) -> UploadId:
        return self._session.upload.upload_id

    @property
    def upload(self) -> ChunkedUpload:
        return self._session.upload

    @property
    def status(self) -> UploadStatus:
        return self._session.upload.status

    @property
    def error(self) -> AppError | None:
        return self._session.error

    def cancel(self) -> None:
        self._coordinator.cancel(self.upload_id)

    async def wait(self) -> str | None:
        """Attachment URL on success, None on failure or cancellation."""
        if self._session.task is None:
            return None
        return await asyncio.shield(self._session.task)

    async def retry(self) -> UploadHandle:
        """Start the same upload again under a new id."""
        if not self._session.upload.is_finished:
            self.cancel()
            await self.wait()
        session = self._session
        return await self._coordinator.start_upload(
            session.upload.room_id,
            session.source,
            content_type=session.upload.content_type,
            on_progress=session.on_progress,
            on_complete=session.on_complete,
            on_error=session.on_error,
        )


class ChunkedTransferCoordinator:
    """Runs uploads chunk by chunk and correlates the broker's replies.

    The first chunk goes out without an upload id. The broker's accepted
    reply assigns one; if it does not arrive within ``accept_timeout`` the
    upload continues under a ``client-`` prefixed id. Completion and error
    notices are matched by upload id, then by session id, then by file name.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        dispatcher: OutboundDispatcher,
        broker: BrokerSession,
        *,
        chunk_size: int = 64 * 1024,
        max_file_size: int = 50 * MIB,
        destination_template: str = "/app/files.upload/{room_id}",
        chunk_delay: float = 0.02,
        accept_timeout: float = 5.0,
        completion_base_timeout: float = 30.0,
        completion_per_mb_timeout: float = 20.0,
        connection_wait: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self._broker = broker
        self._chunk_size = chunk_size
        self._max_file_size = max_file_size
        self._destination_template = destination_template
        self._chunk_delay = chunk_delay
        self._accept_timeout = accept_timeout
        self._completion_base_timeout = completion_base_timeout
        self._completion_per_mb_timeout = completion_per_mb_timeout
        self._connection_wait = connection_wait
        self._sleep = sleep
        self._sessions: dict[UploadId, _Session] = {}
        self._handles: list[SubscriptionHandle] = []
        self._subscribe_lock = asyncio.Lock()

    @property
    def active_uploads(self) -> list[ChunkedUpload]:
        return [session.upload for session in self._sessions.values()]

    async def start_upload(
        self,
        room_id: int,
        source: FileSource,
        *,
        content_type: str | None = None,
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> UploadHandle:
        """Validate and start an upload; raises ValidationError up front."""
        resolved_type = validate_upload(source, content_type, self._max_file_size)
        size = source.size()
        upload = ChunkedUpload(
            upload_id=UploadId(uuid.uuid4().hex),
            room_id=room_id,
            file_name=source.name,
            content_type=resolved_type,
            total_size=size,
            chunk_size=self._chunk_size,
            total_chunks=count_chunks(size, self._chunk_size),
        )
        loop = asyncio.get_running_loop()
        session = _Session(
            upload=upload,
            source=source,
            accepted=loop.create_future(),
            outcome=loop.create_future(),
            on_progress=on_progress,
            on_complete=on_complete,
            on_error=on_error,
        )
        self._sessions[upload.upload_id] = session
        await self._ensure_subscribed()
        session.task = asyncio.create_task(
            self._run(session), name=f"upload-{upload.upload_id}",
        )
        logger.info(
            "Upload %s started: %s (%d bytes, %d chunks) to room %d",
            upload.upload_id, upload.file_name, size, upload.total_chunks, room_id,
        )
        return UploadHandle(self, session)

    def cancel(self, upload_id: str) -> bool:
        session = self._sessions.get(UploadId(upload_id))
        if session is None:
            return False
        session.upload.cancel_requested = True
        if not session.outcome.done():
            session.outcome.set_exception(UploadCancelled(f"Upload {upload_id} cancelled"))
        return True

    def cancel_all(self) -> None:
        """Cancel every active upload and forget the reply subscriptions."""
        for upload_id in list(self._sessions):
            self.cancel(upload_id)
        self._handles = []

    # -- upload task -------------------------------------------------------

    async def _run(self, session: _Session) -> str | None:
        upload = session.upload
        destination = self._destination_template.format(room_id=upload.room_id)
        upload.status = UploadStatus.SENDING
        try:
            index = 0
            async for chunk in iter_chunks(session.source, self._chunk_size):
                if self._check_live(session):
                    break
                index += 1
                await self._send_chunk(session, destination, index, chunk)
                if index == 1 and upload.total_chunks > 1:
                    await self._await_upload_id(session)
                if index < upload.total_chunks:
                    await self._sleep(self._chunk_delay)

            self._check_live(session)
            upload.status = UploadStatus.AWAITING_COMPLETION
            url = await self._await_completion(session)
        except UploadCancelled as exc:
            upload.status = UploadStatus.CANCELLED
            session.error = exc
            logger.info("Upload %s cancelled after %d chunks", upload.upload_id, upload.current_chunk_index)
            return None
        except AppError as exc:
            upload.status = UploadStatus.FAILED
            session.error = exc
            logger.warning("Upload %s failed: %s", upload.upload_id, exc.detail)
            await _notify(session.on_error, exc.detail)
            return None
        finally:
            await self._release(session)

        upload.attachment_url = url
        upload.status = UploadStatus.COMPLETED
        logger.info("Upload %s completed: %s", upload.upload_id, url)
        await _notify(session.on_complete, url)
        return url

    def _check_live(self, session: _Session) -> bool:
        """Raise a pending failure; True once the broker already reported completion."""
        if session.upload.cancel_requested:
            raise UploadCancelled(f"Upload {session.upload.upload_id} cancelled")
        if session.outcome.done():
            session.outcome.result()
            return True
        return False

    async def _send_chunk(
        self,
        session: _Session,
        destination: str,
        index: int,
        chunk: bytes,
    ) -> None:
        upload = session.upload
        if not self._broker.is_connected and not await self._broker.wait_connected(
            self._connection_wait
        ):
            raise TransportFailure(f"No connection to send chunk {index}/{upload.total_chunks}")
        payload = FileChunkPayload(
            file_name=upload.file_name,
            content_type=upload.content_type,
            file_size=upload.total_size,
            chunk_index=index,
            total_chunks=upload.total_chunks,
            data=base64.b64encode(chunk).decode("ascii"),
            chat_room_id=upload.room_id,
            upload_id=None if index == 1 else upload.server_upload_id,
            upload_session_id=upload.upload_id,
        )
        await self._dispatcher.send_now(destination, payload.to_json())
        upload.current_chunk_index = index
        logger.debug("Upload %s sent chunk %d/%d", upload.upload_id, index, upload.total_chunks)
        if not session.broker_progress:
            await self._report_progress(session, index / upload.total_chunks)

    async def _await_upload_id(self, session: _Session) -> None:
        upload = session.upload
        if upload.server_upload_id is not None:
            return
        await asyncio.wait(
            {session.accepted, session.outcome},
            timeout=self._accept_timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if upload.server_upload_id is not None or session.outcome.done():
            return
        upload.server_upload_id = f"{CLIENT_ID_PREFIX}{upload.upload_id}"
        upload.id_is_client_generated = True
        logger.warning(
            "No upload id from broker within %.1fs, continuing as %s",
            self._accept_timeout, upload.server_upload_id,
        )

    async def _await_completion(self, session: _Session) -> str:
        timeout = self._completion_timeout(session.upload.total_size)
        done, _ = await asyncio.wait({session.outcome}, timeout=timeout)
        if not done:
            raise UploadTimeout(
                f"No completion for {session.upload.file_name} within {timeout:.0f}s"
            )
        return session.outcome.result()

    def _completion_timeout(self, size: int) -> float:
        return self._completion_base_timeout + self._completion_per_mb_timeout * size / MIB

    async def _report_progress(self, session: _Session, fraction: float) -> None:
        await _notify(session.on_progress, min(max(fraction, 0.0), 1.0))

    # -- subscriptions -----------------------------------------------------

    async def _ensure_subscribed(self) -> None:
        routes = (
            (FILES_ACCEPTED_QUEUE, self._on_accepted),
            (FILES_PROGRESS_QUEUE, self._on_progress),
            (FILES_COMPLETED_QUEUE, self._on_completed),
            (ERRORS_QUEUE, self._on_error),
        )
        async with self._subscribe_lock:
            if self._handles:
                return
            for destination, callback in routes:
                self._handles.append(await self._registry.subscribe(destination, callback))

    async def _release(self, session: _Session) -> None:
        self._sessions.pop(session.upload.upload_id, None)
        for future in (session.accepted, session.outcome):
            if future.done() and not future.cancelled():
                # Consumed here so an unread failure is not reported at GC.
                future.exception()
            else:
                future.cancel()
        async with self._subscribe_lock:
            if self._sessions or not self._handles:
                return
            handles, self._handles = self._handles, []
            for handle in handles:
                await self._registry.unsubscribe(handle)

    def _find(
        self,
        upload_id: str | None = None,
        session_id: str | None = None,
        file_name: str | None = None,
    ) -> _Session | None:
        sessions = list(self._sessions.values())
        if upload_id:
            for session in sessions:
                if session.upload.matches_id(upload_id):
                    return session
        if session_id:
            for session in sessions:
                if session.upload.upload_id == session_id:
                    return session
        if file_name:
            for session in sessions:
                if session.upload.file_name == file_name:
                    return session
        return None

    # -- reply handlers ----------------------------------------------------

    def _on_accepted(self, frame: StompFrame) -> None:
        reply = _parse(ChunkAcceptedReply, frame)
        if reply is None or not reply.upload_id:
            return
        session = self._find(session_id=reply.upload_session_id)
        if session is None and reply.upload_session_id is None:
            waiting = [s for s in self._sessions.values() if s.upload.server_upload_id is None]
            session = waiting[0] if len(waiting) == 1 else None
        if session is None:
            logger.debug("Accepted reply %s matches no upload", reply.upload_id)
            return
        upload = session.upload
        if upload.id_is_client_generated:
            logger.info(
                "Late upload id %s for %s ignored, continuing as %s",
                reply.upload_id, upload.upload_id, upload.server_upload_id,
            )
            return
        if upload.server_upload_id is None:
            upload.server_upload_id = reply.upload_id
            logger.debug("Upload %s assigned id %s", upload.upload_id, reply.upload_id)
        if not session.accepted.done():
            session.accepted.set_result(reply.upload_id)

    async def _on_progress(self, frame: StompFrame) -> None:
        notice = _parse(UploadProgressNotice, frame)
        if notice is None:
            return
        session = self._find(notice.upload_id, notice.upload_session_id)
        if session is None:
            return
        session.broker_progress = True
        total = notice.total_chunks or session.upload.total_chunks
        await self._report_progress(session, notice.chunk_index / total if total else 0.0)

    def _on_completed(self, frame: StompFrame) -> None:
        notice = _parse(UploadCompletedNotice, frame)
        if notice is None:
            return
        session = self._find(notice.upload_id, notice.upload_session_id, notice.file_name)
        if session is None:
            logger.debug("Completion for %s matches no upload", notice.file_name or notice.upload_id)
            return
        if session.outcome.done():
            return
        if notice.url is None:
            session.outcome.set_exception(
                ProtocolError(f"Completion for {session.upload.file_name} carries no URL")
            )
            return
        session.outcome.set_result(notice.url)

    def _on_error(self, frame: StompFrame) -> None:
        notice = _parse(UploadErrorNotice, frame)
        if notice is None:
            return
        if not notice.has_identity:
            targets = list(self._sessions.values())
            if targets:
                logger.warning("Broker error without upload id, aborting %d uploads", len(targets))
        else:
            session = self._find(notice.upload_id, notice.upload_session_id, notice.file_name)
            if session is None:
                logger.warning("Upload error matches no active upload: %s", notice.message)
            targets = [session] if session is not None else []
        for session in targets:
            if not session.outcome.done():
                session.outcome.set_exception(UploadFailed(notice.message))


def _parse(model: type[Any], frame: StompFrame) -> Any:
    try:
        return model.model_validate(frame.json())
    except (ProtocolError, PayloadError) as exc:
        logger.warning("Dropping malformed upload reply on %s: %s", frame.destination, exc)
        return None


async def _notify(callback: Callable[[Any], Awaitable[None] | None] | None, value: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(value)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Upload callback failed")
