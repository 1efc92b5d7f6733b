"""Report backup endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Request, status

from photo_report.api.models import BackupRequest, PhotoList, PhotoView
from photo_report.services.backup import ReportBackup

if TYPE_CHECKING:
    from photo_report.containers import AppContainer

router = APIRouter(prefix="/backup", tags=["backup"])


@router.get("")
async def get_backup(request: Request) -> ReportBackup:
    """Return the stored backup snapshot."""
    container: AppContainer = request.app.state.container
    backup = container.backup_store.load()
    if backup is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No backup")
    return backup


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_backup(body: BackupRequest, request: Request) -> ReportBackup:
    """Snapshot the report fields and the current photo list."""
    container: AppContainer = request.app.state.container
    return container.backup_store.backup(
        body.report_data, container.photo_store.list_photos()
    )


@router.delete("")
async def clear_backup(request: Request) -> dict[str, bool]:
    container: AppContainer = request.app.state.container
    return {"cleared": container.backup_store.clear()}


@router.post("/restore")
async def restore_backup(request: Request) -> PhotoList:
    """Bring back photos from the snapshot that are not already listed."""
    container: AppContainer = request.app.state.container
    backup = container.backup_store.load()
    if backup is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No backup")
    restored = []
    for photo in container.backup_store.restore_photos(backup):
        if container.photo_store.find(photo.client_id.value) is None:
            restored.append(container.photo_store.add(photo))
    return PhotoList(photos=[PhotoView.from_photo(photo) for photo in restored])
