"""Batch upload coordination with a bounded pool and chunked transfers."""

import asyncio
import logging
import math
import secrets
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, TypeVar

from photo_report.domain.photos import (
    LocalFile,
    PersistedId,
    Photo,
    PhotoStatus,
    ServerRepresentation,
)
from photo_report.errors import (
    ApiFormatError,
    NetworkError,
    ServerFaultError,
    describe_error,
)
from photo_report.services.identity import (
    generate_temporary_id,
    resolve_client_id,
    resolve_photo_id,
)
from photo_report.services.state_machine import can_upload, mark_error, transition

if TYPE_CHECKING:
    from photo_report.config import Settings

logger = logging.getLogger(__name__)

# Transfer progress stops here until the server confirms the stored file.
TRANSFER_PROGRESS_CEILING = 95

ProgressCallback = Callable[[int], None]
ClaimHook = Callable[[list[Photo]], object]
T = TypeVar("T")


class UploadClient(Protocol):
    """Interface for the backend upload endpoints."""

    async def upload_batch(
        self, report_id: str, files: list[LocalFile], client_ids: list[str]
    ) -> list[dict[str, object]]:
        """Upload files in one multipart request and return file descriptors."""

    async def init_chunked_upload(
        self, report_id: str, file: LocalFile, total_chunks: int, client_id: str
    ) -> str:
        """Open a chunked upload session and return its id."""

    async def upload_chunk(
        self, session_id: str, chunk_index: int, total_chunks: int, chunk: bytes
    ) -> None:
        """Send one chunk of a session."""

    async def complete_chunked_upload(
        self, session_id: str, report_id: str
    ) -> dict[str, object]:
        """Finalize a session and return the stored file descriptor."""


class UploadItemStatus(StrEnum):
    """Queue states of a single upload."""

    QUEUED = "queued"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class UploadItem:
    """A file waiting in, or moving through, the upload queue."""

    item_id: str
    file: LocalFile
    report_id: str
    client_id: str
    metadata: dict[str, object] = field(default_factory=dict)
    status: UploadItemStatus = UploadItemStatus.QUEUED
    progress: int = 0
    error: str | None = None
    result: dict[str, object] | None = None
    retry_count: int = 0
    cancel_requested: bool = False


@dataclass(frozen=True)
class UploadBatchResult:
    """Outcome of uploading a set of photos."""

    photos: list[Photo]
    id_mapping: dict[str, str]
    succeeded: int
    failed: int
    rejected: int


@dataclass
class UploadCoordinator:
    """Uploads files with bounded concurrency and reconciles by client id."""

    client: UploadClient
    max_concurrent_uploads: int = 3
    chunk_size: int = 500 * 1024
    concurrent_chunks: int = 3
    max_retries: int = 3
    retry_delay: float = 1.0
    chunked_upload_threshold: int = 5 * 1024 * 1024
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    _queue: deque[UploadItem] = field(default_factory=deque, init=False)
    _active: dict[str, UploadItem] = field(default_factory=dict, init=False)
    _completed: list[UploadItem] = field(default_factory=list, init=False)
    _failed: list[UploadItem] = field(default_factory=list, init=False)
    _drain: asyncio.Task | None = field(default=None, init=False)
    _progress_callback: ProgressCallback | None = field(default=None, init=False)
    _run_listeners: list[Callable[[], None]] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        if self.max_concurrent_uploads < 1:
            raise ValueError("max_concurrent_uploads must be at least 1")
        if self.concurrent_chunks < 1:
            raise ValueError("concurrent_chunks must be at least 1")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")

    @classmethod
    def from_settings(
        cls, client: UploadClient, settings: "Settings"
    ) -> "UploadCoordinator":
        """Build a coordinator using the configured limits."""
        return cls(
            client=client,
            max_concurrent_uploads=settings.max_concurrent_uploads,
            chunk_size=settings.chunk_size_bytes,
            concurrent_chunks=settings.concurrent_chunks,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay_seconds,
            chunked_upload_threshold=settings.chunked_upload_threshold_bytes,
        )

    @property
    def queue(self) -> list[UploadItem]:
        return list(self._queue)

    @property
    def active(self) -> list[UploadItem]:
        return list(self._active.values())

    @property
    def completed(self) -> list[UploadItem]:
        return list(self._completed)

    @property
    def failed(self) -> list[UploadItem]:
        return list(self._failed)

    @property
    def is_processing(self) -> bool:
        return self._drain is not None and not self._drain.done()

    async def upload_photos(
        self,
        photos: list[Photo],
        report_id: str | None,
        progress_callback: ProgressCallback | None = None,
        claim: ClaimHook | None = None,
    ) -> UploadBatchResult:
        """Upload every eligible photo and return updated copies.

        Photos that fail :func:`can_upload` are returned unchanged and never
        reach the network. Each uploaded photo ends ``uploaded`` or ``error``.
        ``claim`` receives the ``uploading`` copies before anything is sent,
        so callers can publish them and keep a second run from picking the
        same photos. ``progress_callback`` only sees this run's items, which
        are dropped from :attr:`completed` and :attr:`failed` on return.
        """
        if not report_id:
            raise ValueError("Report ID is required for uploads")

        eligible = [photo for photo in photos if can_upload(photo)]
        rejected = len(photos) - len(eligible)
        if rejected:
            logger.warning("Skipping %d photos that cannot be uploaded", rejected)

        in_flight: dict[str, Photo] = {}
        for photo in eligible:
            in_flight[photo.client_id.value] = transition(
                photo, PhotoStatus.UPLOADING, upload_progress=0
            )
        if not eligible:
            return UploadBatchResult(
                photos=list(photos),
                id_mapping={},
                succeeded=0,
                failed=0,
                rejected=rejected,
            )
        if claim is not None:
            claim(list(in_flight.values()))
        items = self.add_to_queue(
            [photo.local.file for photo in eligible if photo.local.file is not None],
            report_id,
            [{"clientId": photo.client_id.value} for photo in eligible],
        )

        def report_run_progress() -> None:
            if progress_callback is not None:
                progress_callback(_average_progress(items))

        self._run_listeners.append(report_run_progress)
        try:
            await self.process_queue()
        finally:
            self._run_listeners.remove(report_run_progress)
            self._forget(items)

        updated: dict[str, Photo] = {}
        id_mapping: dict[str, str] = {}
        for item in items:
            photo = in_flight[item.client_id]
            if item.status == UploadItemStatus.COMPLETED and item.result is not None:
                try:
                    photo = reconcile_uploaded_photo(photo, item.result)
                except ApiFormatError as exc:
                    photo = mark_error(photo, describe_error(exc))
                else:
                    if photo.server_id is not None:
                        id_mapping[item.client_id] = photo.server_id.value
            else:
                photo = mark_error(photo, item.error or "Upload failed")
            updated[item.client_id] = photo

        succeeded = len(id_mapping)
        logger.info(
            "Uploaded %d of %d photos for report %s",
            succeeded,
            len(eligible),
            report_id,
        )
        return UploadBatchResult(
            photos=[updated.get(photo.client_id.value, photo) for photo in photos],
            id_mapping=id_mapping,
            succeeded=succeeded,
            failed=len(eligible) - succeeded,
            rejected=rejected,
        )

    def add_to_queue(
        self,
        files: list[LocalFile],
        report_id: str | None,
        metadata: list[dict[str, object]] | None = None,
    ) -> list[UploadItem]:
        """Queue files for upload, assigning client ids where none are given."""
        if not report_id:
            raise ValueError("Report ID is required for uploads")
        metadata = metadata or []
        items = []
        for index, file in enumerate(files):
            meta = dict(metadata[index]) if index < len(metadata) else {}
            client_id = meta.get("clientId")
            if not isinstance(client_id, str) or not client_id:
                client_id = generate_temporary_id("client").value
            items.append(
                UploadItem(
                    item_id=_upload_item_id(index),
                    file=file,
                    report_id=report_id,
                    client_id=client_id,
                    metadata=meta,
                )
            )
        self._queue.extend(items)
        return items

    async def process_queue(
        self, progress_callback: ProgressCallback | None = None
    ) -> None:
        """Drain the queue; joins the running drain if one is in progress."""
        if progress_callback is not None:
            self._progress_callback = progress_callback
        if self._drain is None or self._drain.done():
            self._drain = asyncio.create_task(self._drain_queue())
        await asyncio.shield(self._drain)

    def cancel(self, ids: list[str]) -> list[UploadItem]:
        """Cancel uploads by item id or client id.

        Queued items are dropped immediately. In-flight transfers cannot be
        aborted; they finish and their results are discarded.
        """
        wanted = set(ids)
        cancelled = []
        kept: deque[UploadItem] = deque()
        for item in self._queue:
            if item.item_id in wanted or item.client_id in wanted:
                item.status = UploadItemStatus.CANCELLED
                item.error = "Upload cancelled by user"
                self._failed.append(item)
                cancelled.append(item)
            else:
                kept.append(item)
        self._queue = kept
        for item in self._active.values():
            if item.item_id in wanted or item.client_id in wanted:
                item.cancel_requested = True
                cancelled.append(item)
        if cancelled:
            self._notify()
        return cancelled

    def retry_failed(self, ids: list[str]) -> list[UploadItem]:
        """Move failed or cancelled items back onto the queue."""
        wanted = set(ids)
        retried = [
            item
            for item in self._failed
            if item.item_id in wanted or item.client_id in wanted
        ]
        if not retried:
            return []
        retried_ids = {item.item_id for item in retried}
        self._failed = [
            item for item in self._failed if item.item_id not in retried_ids
        ]
        for item in retried:
            item.status = UploadItemStatus.QUEUED
            item.progress = 0
            item.error = None
            item.result = None
            item.cancel_requested = False
            item.retry_count += 1
            self._queue.append(item)
        return retried

    def clear_completed(self) -> None:
        self._completed = []

    def clear_failed(self) -> None:
        self._failed = []

    def overall_progress(self) -> int:
        """Average progress over queued, in-flight and completed items.

        Reaches 100 only once every tracked item is confirmed by the server.
        """
        return _average_progress(
            [*self._queue, *self._active.values(), *self._completed]
        )

    def _forget(self, items: list[UploadItem]) -> None:
        ids = {item.item_id for item in items}
        self._completed = [item for item in self._completed if item.item_id not in ids]
        self._failed = [item for item in self._failed if item.item_id not in ids]

    async def _drain_queue(self) -> None:
        slots = asyncio.Semaphore(self.max_concurrent_uploads)
        tasks: set[asyncio.Task] = set()
        while self._queue or tasks:
            if not self._queue:
                await asyncio.wait(set(tasks), return_when=asyncio.FIRST_COMPLETED)
                continue
            await slots.acquire()
            if not self._queue:
                slots.release()
                continue
            group = [self._queue.popleft()]
            while self._queue and not slots.locked():
                await slots.acquire()
                group.append(self._queue.popleft())
            for item in group:
                item.status = UploadItemStatus.UPLOADING
                self._active[item.item_id] = item
            for coro in self._dispatch(group, slots):
                task = asyncio.create_task(coro)
                tasks.add(task)
                task.add_done_callback(tasks.discard)
            self._notify()

    def _dispatch(
        self, group: list[UploadItem], slots: asyncio.Semaphore
    ) -> list[Awaitable[None]]:
        threshold = self.chunked_upload_threshold
        large = [item for item in group if item.file.size > threshold]
        small = [item for item in group if item.file.size <= threshold]
        jobs: list[Awaitable[None]] = [
            self._upload_large(item, slots) for item in large
        ]
        by_report: dict[str, list[UploadItem]] = {}
        for item in small:
            by_report.setdefault(item.report_id, []).append(item)
        jobs.extend(self._upload_small(batch, slots) for batch in by_report.values())
        return jobs

    async def _upload_small(
        self, items: list[UploadItem], slots: asyncio.Semaphore
    ) -> None:
        try:
            try:
                descriptors = await self.client.upload_batch(
                    items[0].report_id,
                    [item.file for item in items],
                    [item.client_id for item in items],
                )
            except Exception as exc:
                message = describe_error(exc)
                logger.exception("Batch upload of %d files failed", len(items))
                for item in items:
                    self._fail(item, message)
                return
            for item in items:
                item.progress = TRANSFER_PROGRESS_CEILING
            self._reconcile_batch(items, descriptors)
        finally:
            for _ in items:
                slots.release()

    def _reconcile_batch(
        self, items: list[UploadItem], descriptors: list[dict[str, object]]
    ) -> None:
        by_client_id: dict[str, dict[str, object]] = {}
        for descriptor in descriptors:
            client_id = resolve_client_id(descriptor)
            if client_id is None:
                logger.error(
                    "Upload response contained a file without a client id: %s",
                    descriptor.get("originalName") or descriptor.get("filename"),
                )
                continue
            by_client_id[client_id] = descriptor
        for item in items:
            descriptor = by_client_id.get(item.client_id)
            if descriptor is None:
                self._fail(item, "Photo not found in upload results")
            elif _descriptor_error(descriptor):
                self._fail(item, _descriptor_error(descriptor) or "Upload failed")
            elif resolve_photo_id(descriptor) is None:
                self._fail(item, "Server returned no id for the uploaded photo")
            else:
                self._complete(item, descriptor)

    async def _upload_large(self, item: UploadItem, slots: asyncio.Semaphore) -> None:
        try:
            descriptor = await self._transfer_chunks(item)
        except Exception as exc:
            logger.exception("Chunked upload of %s failed", item.file.name)
            self._fail(item, describe_error(exc))
        else:
            client_id = resolve_client_id(descriptor)
            if client_id is None:
                logger.error(
                    "Chunked upload of %s returned no client id", item.file.name
                )
            if client_id not in {None, item.client_id}:
                self._fail(item, "Upload result belongs to a different photo")
            elif resolve_photo_id(descriptor) is None:
                self._fail(item, "Server returned no id for the uploaded photo")
            else:
                self._complete(item, descriptor)
        finally:
            slots.release()

    async def _transfer_chunks(self, item: UploadItem) -> dict[str, object]:
        file = item.file
        total_chunks = max(1, math.ceil(file.size / self.chunk_size))
        session_id = await self._with_retry(
            lambda: self.client.init_chunked_upload(
                item.report_id, file, total_chunks, item.client_id
            ),
            f"init of {file.name}",
        )
        chunk_slots = asyncio.Semaphore(self.concurrent_chunks)
        sent = 0

        async def send(index: int) -> None:
            nonlocal sent
            async with chunk_slots:
                start = index * self.chunk_size
                chunk = file.read_range(start, min(start + self.chunk_size, file.size))
                await self._with_retry(
                    lambda: self.client.upload_chunk(
                        session_id, index, total_chunks, chunk
                    ),
                    f"chunk {index + 1}/{total_chunks} of {file.name}",
                )
            sent += 1
            self._set_progress(
                item, sent * TRANSFER_PROGRESS_CEILING // total_chunks
            )

        outcomes = await asyncio.gather(
            *(send(index) for index in range(total_chunks)), return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return await self._with_retry(
            lambda: self.client.complete_chunked_upload(session_id, item.report_id),
            f"completion of {file.name}",
        )

    async def _with_retry(
        self, operation: Callable[[], Awaitable[T]], label: str
    ) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except (NetworkError, ServerFaultError) as exc:
                if attempt >= self.max_retries:
                    raise
                delay = self.retry_delay * (2**attempt)
                attempt += 1
                logger.warning(
                    "Retrying %s in %.2fs (attempt %d/%d): %s",
                    label,
                    delay,
                    attempt,
                    self.max_retries,
                    exc,
                )
                await self.sleep(delay)

    def _set_progress(self, item: UploadItem, progress: int) -> None:
        item.progress = min(progress, TRANSFER_PROGRESS_CEILING)
        self._notify()

    def _complete(self, item: UploadItem, descriptor: dict[str, object]) -> None:
        self._active.pop(item.item_id, None)
        if item.cancel_requested:
            self._discard_cancelled(item)
            return
        item.status = UploadItemStatus.COMPLETED
        item.progress = 100
        item.result = descriptor
        self._completed.append(item)
        self._notify()

    def _fail(self, item: UploadItem, message: str) -> None:
        self._active.pop(item.item_id, None)
        if item.cancel_requested:
            self._discard_cancelled(item)
            return
        item.status = UploadItemStatus.FAILED
        item.progress = 0
        item.error = message
        self._failed.append(item)
        self._notify()

    def _discard_cancelled(self, item: UploadItem) -> None:
        item.status = UploadItemStatus.CANCELLED
        item.progress = 0
        item.error = "Upload cancelled by user"
        item.result = None
        self._failed.append(item)
        self._notify()

    def _notify(self) -> None:
        listeners = list(self._run_listeners)
        if self._progress_callback is not None:
            callback = self._progress_callback
            listeners.append(lambda: callback(self.overall_progress()))
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Upload progress callback failed")


def reconcile_uploaded_photo(photo: Photo, descriptor: dict[str, object]) -> Photo:
    """Attach the server id and storage locators from an upload descriptor."""
    server_id = resolve_photo_id(descriptor)
    if server_id is None:
        raise ApiFormatError("Upload descriptor carries no server id")
    server = ServerRepresentation(
        path=_text(descriptor, "path") or f"/api/photos/{server_id}",
        filename=_text(descriptor, "filename"),
        original_url=_text(descriptor, "originalUrl") or _text(descriptor, "url"),
        optimized_url=_text(descriptor, "optimizedUrl"),
        thumbnail_url=_text(descriptor, "thumbnailUrl"),
    )
    return transition(
        photo,
        PhotoStatus.UPLOADED,
        server_id=PersistedId(server_id),
        server=server,
        upload_progress=100,
    )


def _average_progress(items: list[UploadItem]) -> int:
    """Floor of the mean progress, ignoring failed and cancelled items."""
    tracked = [
        item
        for item in items
        if item.status not in {UploadItemStatus.FAILED, UploadItemStatus.CANCELLED}
    ]
    if not tracked:
        return 0
    return sum(item.progress for item in tracked) // len(tracked)


def _descriptor_error(descriptor: dict[str, object]) -> str | None:
    error = descriptor.get("error")
    if isinstance(error, str) and error:
        return error
    if descriptor.get("status") in {"error", "failed"}:
        return "Upload failed on the server"
    return None


def _text(descriptor: dict[str, object], key: str) -> str | None:
    value = descriptor.get(key)
    return value if isinstance(value, str) and value else None


def _upload_item_id(index: int) -> str:
    suffix = secrets.token_hex(4)
    return f"upload_{int(time.time() * 1000)}_{suffix}_{index}"
