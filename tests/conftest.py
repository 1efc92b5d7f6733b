"""Shared test fixtures."""

import asyncio
import itertools
from dataclasses import dataclass, field, replace
from pathlib import Path

import httpx
import pytest

from photo_report.adapters.photo_api_client import HttpxPhotoApiClient
from photo_report.config import Settings
from photo_report.containers import AppContainer
from photo_report.domain.analysis import PhotoAnalysis
from photo_report.domain.photos import (
    LocalFile,
    LocalRepresentation,
    PersistedId,
    Photo,
    PhotoStatus,
    ServerRepresentation,
)
from photo_report.errors import NetworkError
from photo_report.services.analysis import AnalysisClient, AnalysisCoordinator
from photo_report.services.backup import ReportBackupStore
from photo_report.services.identity import generate_temporary_id, resolve_photo_id
from photo_report.services.photo_store import PhotoStore
from photo_report.services.preservation import BlobUrlRegistry, PhotoDataPreserver
from photo_report.services.uploads import UploadClient, UploadCoordinator
from photo_report.services.vision import VisionClient

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 60


def object_id(number: int) -> str:
    return f"{number:024x}"


def make_photo(
    name: str = "roof.jpg", data: bytes = JPEG_BYTES, **changes: object
) -> Photo:
    """Build a pending photo holding an in-memory file."""
    file = LocalFile.from_bytes(name, data, "image/jpeg")
    photo = Photo(
        client_id=generate_temporary_id(),
        original_name=name,
        content_type=file.content_type,
        size=file.size,
        local=LocalRepresentation(file=file),
    )
    return replace(photo, **changes)


def make_uploaded_photo(number: int, with_file: bool = False) -> Photo:
    """Build an uploaded photo with a persisted id."""
    server_id = object_id(number)
    file = LocalFile.from_bytes(f"photo-{number}.jpg", JPEG_BYTES, "image/jpeg")
    return Photo(
        client_id=generate_temporary_id(),
        original_name=f"photo-{number}.jpg",
        content_type="image/jpeg",
        size=len(JPEG_BYTES),
        status=PhotoStatus.UPLOADED,
        server_id=PersistedId(server_id),
        local=LocalRepresentation(file=file if with_file else None),
        server=ServerRepresentation(path=f"/api/photos/{server_id}"),
    )


def sample_analysis(label: str = "roof") -> dict[str, object]:
    return {
        "description": f"Missing shingles on the {label}",
        "tags": ["shingles", "wind damage"],
        "damageDetected": True,
        "severity": "moderate",
        "confidence": 0.82,
        "recommendedAction": "Replace damaged shingles",
    }


@dataclass
class RecordingSleep:
    """Sleep replacement that records requested delays."""

    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@dataclass
class FakeUploadClient(UploadClient):
    """Fake upload backend that assigns ids and records concurrency."""

    delay: float = 0.01
    failing_names: set[str] = field(default_factory=set)
    batch_errors: list[Exception] = field(default_factory=list)
    chunk_failures: dict[int, int] = field(default_factory=dict)
    echo_client_ids: bool = True
    in_flight: int = 0
    max_in_flight: int = 0
    samples: list[int] = field(default_factory=list)
    batch_calls: list[list[str]] = field(default_factory=list)
    chunk_calls: list[tuple[str, int]] = field(default_factory=list)
    chunks: dict[str, dict[int, bytes]] = field(default_factory=dict)
    sessions: dict[str, tuple[str, str]] = field(default_factory=dict)
    _ids: itertools.count = field(default_factory=lambda: itertools.count(1))

    async def upload_batch(
        self, report_id: str, files: list[LocalFile], client_ids: list[str]
    ) -> list[dict[str, object]]:
        self.batch_calls.append([file.name for file in files])
        self._enter(len(files))
        try:
            await asyncio.sleep(self.delay)
            if self.batch_errors:
                raise self.batch_errors.pop(0)
            descriptors = []
            for file, client_id in zip(files, client_ids, strict=True):
                if file.name in self.failing_names:
                    descriptors.append(
                        {
                            "clientId": client_id,
                            "originalName": file.name,
                            "error": "Corrupt image",
                        }
                    )
                    continue
                descriptors.append(self._descriptor(file.name, client_id))
            return descriptors
        finally:
            self._leave(len(files))

    async def init_chunked_upload(
        self, report_id: str, file: LocalFile, total_chunks: int, client_id: str
    ) -> str:
        session_id = f"session-{len(self.sessions) + 1}"
        self.sessions[session_id] = (file.name, client_id)
        self.chunks[session_id] = {}
        self._enter(1)
        return session_id

    async def upload_chunk(
        self, session_id: str, chunk_index: int, total_chunks: int, chunk: bytes
    ) -> None:
        self.chunk_calls.append((session_id, chunk_index))
        await asyncio.sleep(self.delay / 10)
        remaining = self.chunk_failures.get(chunk_index, 0)
        if remaining:
            self.chunk_failures[chunk_index] = remaining - 1
            raise NetworkError("connection reset")
        self.chunks[session_id][chunk_index] = chunk

    async def complete_chunked_upload(
        self, session_id: str, report_id: str
    ) -> dict[str, object]:
        name, client_id = self.sessions[session_id]
        self._leave(1)
        return self._descriptor(name, client_id)

    def assembled(self, session_id: str) -> bytes:
        parts = self.chunks[session_id]
        return b"".join(parts[index] for index in sorted(parts))

    def _descriptor(self, name: str, client_id: str) -> dict[str, object]:
        server_id = object_id(next(self._ids))
        descriptor: dict[str, object] = {
            "_id": server_id,
            "originalName": name,
            "filename": f"{server_id}.jpg",
            "path": f"/api/photos/{server_id}",
            "thumbnailUrl": f"/api/photos/{server_id}?size=thumbnail",
            "optimizedUrl": f"/api/photos/{server_id}?size=medium",
        }
        if self.echo_client_ids:
            descriptor["clientId"] = client_id
        return descriptor

    def _enter(self, count: int) -> None:
        self.in_flight += count
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.samples.append(self.in_flight)

    def _leave(self, count: int) -> None:
        self.in_flight -= count


@dataclass
class FakeAnalysisClient(AnalysisClient):
    """Fake analysis backend with optional scripted responses."""

    responses: list[object] = field(default_factory=list)
    calls: list[list[str | None]] = field(default_factory=list)
    events: list[str] = field(default_factory=list)

    async def analyze(self, report_id: str, photos: list[Photo]) -> object:
        ids = [resolve_photo_id(photo) for photo in photos]
        number = len(self.calls) + 1
        self.calls.append(ids)
        self.events.append(f"start-{number}")
        await asyncio.sleep(0)
        self.events.append(f"end-{number}")
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return {
            "success": True,
            "data": {
                "results": [
                    {"photoId": photo_id, "analysis": sample_analysis()}
                    for photo_id in ids
                ]
            },
        }


@dataclass
class FakeVisionClient(VisionClient):
    """Fake vision client returning a fixed payload."""

    payload: dict[str, object] = field(default_factory=sample_analysis)
    prompts: list[str] = field(default_factory=list)
    image_urls: list[str] = field(default_factory=list)

    async def extract(  # noqa: PLR0913
        self,
        *,
        model: str,
        reasoning_effort: str | None,
        store: bool,
        image_data_url: str,
        schema: dict[str, object],
        prompt: str,
    ) -> dict[str, object]:
        self.prompts.append(prompt)
        self.image_urls.append(image_data_url)
        return self.payload


@dataclass
class FakeBackend:
    """Request recorder behind an ``httpx.MockTransport``."""

    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "DELETE":
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"success": False, "error": "Not found"})


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        api_base_url="http://reports.test",
        openai_api_key="openai-key",
        analysis_batch_delay_seconds=0,
        backup_path=str(tmp_path / "backup.json"),
    )


@pytest.fixture
def upload_client() -> FakeUploadClient:
    return FakeUploadClient()


@pytest.fixture
def analysis_client() -> FakeAnalysisClient:
    return FakeAnalysisClient()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def container(
    settings: Settings,
    upload_client: FakeUploadClient,
    analysis_client: FakeAnalysisClient,
    backend: FakeBackend,
) -> AppContainer:
    api_client = HttpxPhotoApiClient(
        base_url=settings.api_base_url,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(backend)),
    )
    preserver = PhotoDataPreserver(
        registry=BlobUrlRegistry(),
        eager_data_url_max_bytes=settings.eager_data_url_max_bytes,
    )

    async def close_resources() -> None:
        await api_client.close()

    return AppContainer(
        settings=settings,
        api_client=api_client,
        preserver=preserver,
        upload_coordinator=UploadCoordinator.from_settings(upload_client, settings),
        analysis_coordinator=AnalysisCoordinator.from_settings(
            analysis_client, settings
        ),
        backup_store=ReportBackupStore(Path(settings.backup_path)),
        photo_store=PhotoStore(),
        close_resources=close_resources,
    )


def analyzed_photo(number: int) -> Photo:
    """Build an analyzed photo for backup and API tests."""
    return replace(
        make_uploaded_photo(number),
        status=PhotoStatus.ANALYZED,
        analysis=PhotoAnalysis.model_validate(sample_analysis()),
    )
