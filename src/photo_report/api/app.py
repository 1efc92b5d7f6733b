"""FastAPI application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile, status
from pydantic import ValidationError

from photo_report.api.backup import router as backup_router
from photo_report.api.models import (
    AnalysisUpdate,
    AnalyzeRequest,
    AnalyzeResponse,
    PhotoList,
    PhotoView,
    UploadRequest,
    UploadResponse,
)
from photo_report.app_logging import configure_logging
from photo_report.containers import AppContainer
from photo_report.domain.analysis import PhotoAnalysis
from photo_report.domain.photos import (
    LocalFile,
    LocalRepresentation,
    Photo,
    PhotoStatus,
)
from photo_report.errors import (
    InvalidTransitionError,
    PhotoPipelineError,
    describe_error,
)
from photo_report.services.identity import generate_temporary_id
from photo_report.services.state_machine import group_photos_by_status, retry


def create_app(container: AppContainer) -> FastAPI:  # noqa: PLR0915
    """Create a FastAPI app configured with dependencies."""
    configure_logging()
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    app.include_router(backup_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    @app.post("/photos", status_code=status.HTTP_201_CREATED)
    async def add_photos(
        request: Request, files: list[UploadFile] = File(...)
    ) -> PhotoList:
        """Register selected files as pending photos."""
        state_container: AppContainer = request.app.state.container
        added = []
        for upload in files:
            data = await upload.read()
            file = LocalFile.from_bytes(
                upload.filename or "photo", data, upload.content_type
            )
            photo = Photo(
                client_id=generate_temporary_id(),
                original_name=file.name,
                content_type=file.content_type,
                size=file.size,
                local=LocalRepresentation(file=file),
            )
            photo = await state_container.preserver.preserve_async(photo)
            added.append(state_container.photo_store.add(photo))
        logger.info("Added %d photos", len(added))
        return PhotoList(photos=[PhotoView.from_photo(photo) for photo in added])

    @app.get("/photos")
    async def list_photos(
        request: Request,
        photo_status: PhotoStatus | None = Query(default=None, alias="status"),
    ) -> PhotoList:
        """Return the current photo list, optionally filtered by status."""
        state_container: AppContainer = request.app.state.container
        photos = state_container.photo_store.list_photos(photo_status)
        return PhotoList(photos=[PhotoView.from_photo(photo) for photo in photos])

    @app.get("/photos/summary")
    async def photo_summary(request: Request) -> dict[str, int]:
        """Count photos per status."""
        state_container: AppContainer = request.app.state.container
        groups = group_photos_by_status(state_container.photo_store.list_photos())
        return {str(key): len(photos) for key, photos in groups.items()}

    @app.get("/photos/{key}")
    async def get_photo(key: str, request: Request) -> PhotoView:
        state_container: AppContainer = request.app.state.container
        return PhotoView.from_photo(_get_photo(state_container, key))

    @app.delete("/photos/{key}")
    async def delete_photo(
        key: str, request: Request, remote: bool = False
    ) -> dict[str, str]:
        """Remove a photo, optionally deleting the stored copy too."""
        state_container: AppContainer = request.app.state.container
        photo = _get_photo(state_container, key)
        if remote and photo.server_id is not None:
            try:
                await state_container.api_client.delete_photo(photo.server_id.value)
            except PhotoPipelineError as exc:
                logger.exception("Failed to delete stored photo %s", photo.server_id)
                raise HTTPException(
                    status_code=status.HTTP_502_BAD_GATEWAY,
                    detail=describe_error(exc),
                ) from exc
        state_container.photo_store.remove(photo.client_id.value)
        state_container.preserver.release(photo)
        return {"status": "deleted"}

    @app.post("/photos/{key}/retry")
    async def retry_photo(key: str, request: Request) -> PhotoView:
        """Reset a failed photo to pending."""
        state_container: AppContainer = request.app.state.container
        photo = _get_photo(state_container, key)
        try:
            pending = retry(photo)
        except InvalidTransitionError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT, detail=str(exc)
            ) from exc
        state_container.photo_store.commit([pending])
        return PhotoView.from_photo(pending)

    @app.patch("/photos/{key}/analysis")
    async def update_analysis(
        key: str, update: AnalysisUpdate, request: Request
    ) -> PhotoView:
        """Apply reviewer edits to a photo's analysis."""
        state_container: AppContainer = request.app.state.container
        photo = _get_photo(state_container, key)
        if photo.status != PhotoStatus.ANALYZED or photo.analysis is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Only analyzed photos can be reviewed",
            )
        current = photo.analysis
        try:
            analysis = PhotoAnalysis.model_validate(
                {**current.model_dump(), **update.model_dump(exclude_unset=True)}
            )
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=exc.errors(include_url=False),
            ) from exc
        edited = replace(photo, analysis=analysis)
        state_container.photo_store.commit([edited])
        return PhotoView.from_photo(edited)

    @app.post("/reports/{report_id}/upload")
    async def upload_report_photos(
        report_id: str, request: Request, body: UploadRequest | None = None
    ) -> UploadResponse:
        """Upload pending photos for a report."""
        state_container: AppContainer = request.app.state.container
        photos = _select_photos(state_container, body.photo_ids if body else None)
        result = await state_container.upload_coordinator.upload_photos(
            photos, report_id, claim=state_container.photo_store.commit
        )
        state_container.photo_store.commit(_changed(photos, result.photos))
        return UploadResponse.from_result(result)

    @app.post("/reports/{report_id}/analyze")
    async def analyze_report_photos(
        report_id: str, request: Request, body: AnalyzeRequest | None = None
    ) -> AnalyzeResponse:
        """Analyze uploaded photos for a report."""
        state_container: AppContainer = request.app.state.container
        photos = _select_photos(state_container, body.photo_ids if body else None)
        result = await state_container.analysis_coordinator.analyze_photos(
            report_id, photos, claim=state_container.photo_store.commit
        )
        state_container.photo_store.commit(_changed(photos, result.photos))
        return AnalyzeResponse.from_result(result)

    return app


def _get_photo(container: AppContainer, key: str) -> Photo:
    photo = container.photo_store.find(key)
    if photo is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Photo not found"
        )
    return photo


def _changed(before: list[Photo], after: list[Photo]) -> list[Photo]:
    # Untouched photos come back as the same objects.
    return [new for old, new in zip(before, after, strict=True) if new is not old]


def _select_photos(container: AppContainer, keys: list[str] | None) -> list[Photo]:
    if keys is None:
        return container.photo_store.list_photos()
    return [_get_photo(container, key) for key in keys]
