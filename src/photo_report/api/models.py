"""Request and response models for the photo API."""

from pydantic import BaseModel, Field

from photo_report.domain.photos import Photo, PhotoStatus
from photo_report.services.analysis import AnalysisBatchResult
from photo_report.services.preservation import best_data_source, photo_url
from photo_report.services.uploads import UploadBatchResult


class PhotoView(BaseModel):
    """Photo as shown to the report UI."""

    id: str
    client_id: str
    server_id: str | None = None
    original_name: str
    content_type: str
    size: int
    status: PhotoStatus
    upload_progress: int = 0
    error: str | None = None
    url: str = ""
    thumbnail_url: str = ""
    data_source: str = "none"
    analysis: dict[str, object] | None = None

    @classmethod
    def from_photo(cls, photo: Photo) -> "PhotoView":
        source, _ = best_data_source(photo)
        return cls(
            id=str(photo.id),
            client_id=photo.client_id.value,
            server_id=photo.server_id.value if photo.server_id else None,
            original_name=photo.original_name,
            content_type=photo.content_type,
            size=photo.size,
            status=photo.status,
            upload_progress=photo.upload_progress,
            error=photo.error,
            url=photo_url(photo, "original"),
            thumbnail_url=photo_url(photo, "thumbnail"),
            data_source=source,
            analysis=photo.analysis.to_api() if photo.analysis else None,
        )


class PhotoList(BaseModel):
    photos: list[PhotoView]


class UploadRequest(BaseModel):
    """Optional subset of photos to upload; all uploadable photos by default."""

    photo_ids: list[str] | None = None


class UploadResponse(BaseModel):
    photos: list[PhotoView]
    id_mapping: dict[str, str]
    succeeded: int
    failed: int
    rejected: int

    @classmethod
    def from_result(cls, result: UploadBatchResult) -> "UploadResponse":
        return cls(
            photos=[PhotoView.from_photo(photo) for photo in result.photos],
            id_mapping=result.id_mapping,
            succeeded=result.succeeded,
            failed=result.failed,
            rejected=result.rejected,
        )


class AnalyzeRequest(BaseModel):
    photo_ids: list[str] | None = None


class AnalysisFailureView(BaseModel):
    batch_index: int
    photo_ids: list[str]
    message: str


class AnalyzeResponse(BaseModel):
    photos: list[PhotoView]
    succeeded: int
    failed: int
    skipped: int
    summary: str
    failures: list[AnalysisFailureView] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: AnalysisBatchResult) -> "AnalyzeResponse":
        return cls(
            photos=[PhotoView.from_photo(photo) for photo in result.photos],
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
            summary=result.summary,
            failures=[
                AnalysisFailureView(
                    batch_index=failure.batch_index,
                    photo_ids=failure.photo_ids,
                    message=failure.message,
                )
                for failure in result.failures
            ],
        )


class AnalysisUpdate(BaseModel):
    """Reviewer edits to an analysis; unset fields are left alone."""

    description: str | None = None
    tags: list[str] | None = None
    damage_detected: bool | None = None
    severity: str | None = None
    recommended_action: str | None = None


class BackupRequest(BaseModel):
    report_data: dict[str, object] = Field(default_factory=dict)
