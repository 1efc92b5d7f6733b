"""Preservation of client-side photo data across copies and steps."""

import asyncio
import base64
import binascii
import logging
import uuid
from dataclasses import dataclass, field, replace

from photo_report.domain.photos import (
    LocalFile,
    LocalRepresentation,
    Photo,
    ServerRepresentation,
)
from photo_report.errors import LocalConversionError
from photo_report.services.identity import resolve_photo_id

logger = logging.getLogger(__name__)

PHOTO_SIZES = ("original", "medium", "thumbnail")


@dataclass
class BlobUrlRegistry:
    """Issues and tracks ``blob:`` URLs for local files.

    A URL stays valid until it is revoked. Asking twice for the same file
    returns the URL issued the first time.
    """

    origin: str = "photo-report"
    _by_file: dict[LocalFile, str] = field(default_factory=dict)
    _by_url: dict[str, LocalFile] = field(default_factory=dict)

    def create(self, file: LocalFile) -> str:
        """Return the tracked URL for ``file``, creating it if needed."""
        existing = self._by_file.get(file)
        if existing is not None:
            return existing
        url = f"blob:{self.origin}/{uuid.uuid4()}"
        self._by_file[file] = url
        self._by_url[url] = file
        return url

    def is_valid(self, url: str | None) -> bool:
        return bool(url) and url in self._by_url

    def resolve(self, url: str) -> LocalFile | None:
        """Return the file behind a live blob URL."""
        return self._by_url.get(url)

    def revoke(self, url: str | None) -> None:
        """Invalidate a blob URL; unknown URLs are ignored."""
        if not url:
            return
        file = self._by_url.pop(url, None)
        if file is not None:
            self._by_file.pop(file, None)

    def revoke_all(self) -> None:
        self._by_url.clear()
        self._by_file.clear()

    def __len__(self) -> int:
        return len(self._by_url)


@dataclass
class PhotoDataPreserver:
    """Keeps a locally renderable representation attached to photos."""

    registry: BlobUrlRegistry
    eager_data_url_max_bytes: int = 5 * 1024 * 1024

    def preserve(self, photo: Photo) -> Photo:
        """Return a copy that keeps its file, preview and data URL.

        Synthesizes a blob URL for a file that has none and carries a
        ``data:`` preview into the durable data-URL slot.
        """
        local = photo.local
        blob_url = local.blob_url
        data_url = local.data_url

        if blob_url and blob_url.startswith("data:"):
            data_url = data_url or blob_url
        if local.file is not None and not self.registry.is_valid(blob_url):
            if blob_url is None or blob_url.startswith("blob:"):
                blob_url = self.registry.create(local.file)

        preserved = replace(
            photo,
            local=LocalRepresentation(
                file=local.file, blob_url=blob_url, data_url=data_url
            ),
        )
        return _ensure_server_path(preserved)

    async def preserve_async(self, photo: Photo) -> Photo:
        """Preserve and, for small files, materialize a data URL as well.

        Files above the eager limit stay blob-only until
        :meth:`materialize_data_url` is awaited.
        """
        preserved = self.preserve(photo)
        file = preserved.local.file
        if (
            file is None
            or preserved.local.data_url
            or file.size > self.eager_data_url_max_bytes
        ):
            return preserved
        return await self.materialize_data_url(preserved)

    async def materialize_data_url(self, photo: Photo) -> Photo:
        """Attach a data URL built from the photo's file, off the event loop."""
        file = photo.local.file
        if file is None or photo.local.data_url:
            return photo
        try:
            data_url = await asyncio.to_thread(file_to_data_url, file)
        except (OSError, LocalConversionError) as exc:
            logger.warning(
                "Failed to create data URL for %s: %s", photo.original_name, exc
            )
            return photo
        return replace(photo, local=replace(photo.local, data_url=data_url))

    def preserve_batch(self, photos: list[Photo]) -> list[Photo]:
        return [self.preserve(photo) for photo in photos]

    def release(self, photo: Photo) -> Photo:
        """Revoke the photo's blob URL; call when the photo is removed."""
        if photo.local.blob_url and photo.local.blob_url.startswith("blob:"):
            self.registry.revoke(photo.local.blob_url)
            return replace(photo, local=replace(photo.local, blob_url=None))
        return photo

    def local_bytes(self, photo: Photo) -> bytes | None:
        """Return image bytes from the best local source, if any."""
        source, data = best_data_source(photo)
        try:
            if source == "file" and isinstance(data, LocalFile):
                return data.read_bytes()
            if source == "dataUrl" and isinstance(data, str):
                return data_url_to_bytes(data)
        except (OSError, LocalConversionError) as exc:
            logger.warning(
                "Local data unavailable for %s: %s", photo.original_name, exc
            )
            return None
        if photo.local.blob_url:
            file = self.registry.resolve(photo.local.blob_url)
            if file is not None:
                return file.read_bytes()
        return None


def best_data_source(photo: Photo) -> tuple[str, object]:
    """Return ``(kind, data)`` for the best available image source."""
    if photo.local.file is not None:
        return "file", photo.local.file
    if photo.local.data_url:
        return "dataUrl", photo.local.data_url
    server_id = resolve_photo_id(photo)
    if server_id:
        path = photo.server.path if photo.server and photo.server.path else None
        return "serverUrl", path or f"/api/photos/{server_id}"
    return "none", None


def group_photos_by_data_availability(
    photos: list[Photo],
) -> tuple[list[Photo], list[Photo]]:
    """Split photos into those with local data and those needing the server."""
    with_local: list[Photo] = []
    needs_server: list[Photo] = []
    for photo in photos:
        kind, _ = best_data_source(photo)
        if kind in {"file", "dataUrl"}:
            with_local.append(photo)
        elif kind == "serverUrl":
            needs_server.append(photo)
    return with_local, needs_server


def photo_url(photo: Photo, size: str = "original") -> str:
    """Return the best URL for displaying a photo."""
    if size not in PHOTO_SIZES:
        raise ValueError(f"Unknown photo size: {size}")
    if photo.local.blob_url:
        return photo.local.blob_url
    if photo.local.data_url:
        return photo.local.data_url
    if photo.server is not None:
        if size == "thumbnail" and photo.server.thumbnail_url:
            return photo.server.thumbnail_url
        if size == "medium" and photo.server.optimized_url:
            return photo.server.optimized_url
    server_id = resolve_photo_id(photo)
    if not server_id:
        return ""
    base = f"/api/photos/{server_id}"
    return base if size == "original" else f"{base}?size={size}"


def file_to_data_url(file: LocalFile) -> str:
    """Encode a local file as a base64 data URL."""
    return bytes_to_data_url(file.read_bytes(), file.content_type)


def bytes_to_data_url(data: bytes, content_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


def data_url_to_bytes(data_url: str) -> bytes:
    """Decode a base64 data URL back into bytes."""
    if not data_url.startswith("data:") or "," not in data_url:
        raise LocalConversionError("Not a data URL")
    header, payload = data_url.split(",", maxsplit=1)
    if not header.endswith(";base64"):
        raise LocalConversionError("Only base64 data URLs are supported")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise LocalConversionError("Malformed data URL payload") from exc


def _ensure_server_path(photo: Photo) -> Photo:
    if photo.server is not None and photo.server.path:
        return photo
    server_id = resolve_photo_id(photo)
    if not server_id:
        return photo
    server = photo.server or ServerRepresentation()
    return replace(photo, server=replace(server, path=f"/api/photos/{server_id}"))
