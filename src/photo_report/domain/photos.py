"""Domain models for report photos."""

import mimetypes
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path

from photo_report.domain.analysis import PhotoAnalysis


class PhotoStatus(StrEnum):
    """Lifecycle states of a photo."""

    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    ERROR = "error"


@dataclass(frozen=True)
class TemporaryId:
    """Client-generated identifier used before the server assigns one."""

    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PersistedId:
    """Server-assigned document identifier."""

    value: str

    def __str__(self) -> str:
        return self.value


PhotoId = TemporaryId | PersistedId


@dataclass(frozen=True)
class LocalFile:
    """File selected on the client, held in memory or on disk."""

    name: str
    content_type: str
    size: int
    data: bytes | None = field(default=None, repr=False)
    path: Path | None = None

    @classmethod
    def from_bytes(
        cls, name: str, data: bytes, content_type: str | None = None
    ) -> "LocalFile":
        """Wrap in-memory bytes as a local file."""
        return cls(
            name=name,
            content_type=content_type or _guess_content_type(name),
            size=len(data),
            data=data,
        )

    @classmethod
    def from_path(cls, path: Path, content_type: str | None = None) -> "LocalFile":
        """Reference a file on disk without reading it."""
        return cls(
            name=path.name,
            content_type=content_type or _guess_content_type(path.name),
            size=path.stat().st_size,
            path=path,
        )

    def read_bytes(self) -> bytes:
        """Return the full file contents."""
        if self.data is not None:
            return self.data
        if self.path is not None:
            return self.path.read_bytes()
        raise FileNotFoundError(f"No data available for {self.name}")

    def read_range(self, start: int, end: int) -> bytes:
        """Return bytes in ``[start, end)``."""
        if self.data is not None:
            return self.data[start:end]
        if self.path is not None:
            with self.path.open("rb") as handle:
                handle.seek(start)
                return handle.read(max(0, end - start))
        raise FileNotFoundError(f"No data available for {self.name}")


@dataclass(frozen=True)
class LocalRepresentation:
    """Client-only renderable forms of a photo."""

    file: LocalFile | None = None
    blob_url: str | None = None
    data_url: str | None = field(default=None, repr=False)

    @property
    def is_empty(self) -> bool:
        return self.file is None and self.blob_url is None and self.data_url is None


@dataclass(frozen=True)
class ServerRepresentation:
    """Storage locators returned by the backend after upload."""

    path: str | None = None
    filename: str | None = None
    original_url: str | None = None
    optimized_url: str | None = None
    thumbnail_url: str | None = None


@dataclass(frozen=True)
class Photo:
    """A photo tracked by the client through upload and analysis."""

    client_id: TemporaryId
    original_name: str
    content_type: str
    size: int
    status: PhotoStatus = PhotoStatus.PENDING
    server_id: PersistedId | None = None
    local: LocalRepresentation = field(default_factory=LocalRepresentation)
    server: ServerRepresentation | None = None
    analysis: PhotoAnalysis | None = None
    upload_progress: int = 0
    error: str | None = None
    last_transition: datetime | None = None

    @property
    def id(self) -> PhotoId:
        """Canonical identifier: the server id once known, else the client id."""
        return self.server_id or self.client_id

    @property
    def file(self) -> LocalFile | None:
        return self.local.file


def _guess_content_type(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"
