"""JSON backup of report data so AI results survive submission failures."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from photo_report.domain.analysis import PhotoAnalysis
from photo_report.domain.photos import (
    PersistedId,
    Photo,
    PhotoStatus,
    ServerRepresentation,
    TemporaryId,
)

logger = logging.getLogger(__name__)

_INTERRUPTED_STATUSES = {PhotoStatus.UPLOADING, PhotoStatus.ANALYZING}


class BackupServerLocators(BaseModel):
    """Server storage locators kept in a backup."""

    path: str | None = None
    filename: str | None = None
    original_url: str | None = None
    optimized_url: str | None = None
    thumbnail_url: str | None = None


class BackupPhoto(BaseModel):
    """Serializable photo metadata; never file handles or local URLs."""

    client_id: str
    server_id: str | None = None
    original_name: str
    content_type: str = "application/octet-stream"
    size: int = 0
    status: PhotoStatus = PhotoStatus.PENDING
    error: str | None = None
    server: BackupServerLocators | None = None
    analysis: PhotoAnalysis | None = None

    @classmethod
    def from_photo(cls, photo: Photo) -> "BackupPhoto":
        server = None
        if photo.server is not None:
            server = BackupServerLocators(
                path=photo.server.path,
                filename=photo.server.filename,
                original_url=photo.server.original_url,
                optimized_url=photo.server.optimized_url,
                thumbnail_url=photo.server.thumbnail_url,
            )
        return cls(
            client_id=photo.client_id.value,
            server_id=photo.server_id.value if photo.server_id else None,
            original_name=photo.original_name,
            content_type=photo.content_type,
            size=photo.size,
            status=photo.status,
            error=photo.error,
            server=server,
            analysis=photo.analysis,
        )


class ReportBackup(BaseModel):
    """A timestamped snapshot of a report in progress."""

    timestamp: datetime
    report_data: dict[str, object] = Field(default_factory=dict)
    photos: list[BackupPhoto] = Field(default_factory=list)


@dataclass
class ReportBackupStore:
    """Stores a single report backup as a JSON file."""

    path: Path

    def backup(
        self, report_data: dict[str, object], photos: list[Photo]
    ) -> ReportBackup:
        """Write a snapshot, replacing any previous one."""
        snapshot = ReportBackup(
            timestamp=datetime.now(tz=UTC),
            report_data=report_data,
            photos=[BackupPhoto.from_photo(photo) for photo in photos],
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        tmp_path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(self.path)
        logger.info("Backed up report with %d photos to %s", len(photos), self.path)
        return snapshot

    def load(self) -> ReportBackup | None:
        """Return the stored snapshot, or None when absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
            return ReportBackup.model_validate_json(raw)
        except (OSError, ValidationError) as exc:
            logger.warning("Failed to read report backup %s: %s", self.path, exc)
            return None

    def clear(self) -> bool:
        """Delete the snapshot; returns whether one existed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Cleared report backup %s", self.path)
        return True

    def has_backup(self) -> bool:
        return self.path.exists()

    def restore_photos(self, backup: ReportBackup | None = None) -> list[Photo]:
        """Rebuild photos from ``backup`` or from the stored snapshot."""
        snapshot = backup or self.load()
        if snapshot is None:
            return []
        return restore_photos(snapshot)


def restore_photos(backup: ReportBackup) -> list[Photo]:
    """Rebuild photos from a snapshot.

    Restored photos carry no local data. Photos the server already stores
    come back ``uploaded`` unless they were analyzed. Photos caught
    mid-upload, or with no server copy, come back as errors so they can
    be selected again.
    """
    return [_restore_photo(item) for item in backup.photos]


def _restore_photo(item: BackupPhoto) -> Photo:
    server = None
    if item.server is not None:
        server = ServerRepresentation(**item.server.model_dump())
    status = item.status
    error = item.error
    analysis = item.analysis
    if status == PhotoStatus.ANALYZED and (
        analysis is None or not analysis.has_content or not item.server_id
    ):
        status = PhotoStatus.UPLOADED
    if status in {PhotoStatus.ANALYZING, PhotoStatus.PENDING} and item.server_id:
        status = PhotoStatus.UPLOADED
    if status in _INTERRUPTED_STATUSES or status == PhotoStatus.PENDING:
        status = PhotoStatus.ERROR
    if status == PhotoStatus.UPLOADED and not item.server_id:
        status = PhotoStatus.ERROR
    if status != PhotoStatus.ANALYZED:
        analysis = None
    if status == PhotoStatus.ERROR and not error:
        error = "Local file is no longer available; select the photo again"
    return Photo(
        client_id=TemporaryId(item.client_id),
        original_name=item.original_name,
        content_type=item.content_type,
        size=item.size,
        status=status,
        server_id=PersistedId(item.server_id) if item.server_id else None,
        server=server,
        analysis=analysis,
        error=error,
    )
