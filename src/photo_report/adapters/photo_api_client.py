"""Report backend photo API client."""

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass

import httpx

from photo_report.domain.photos import LocalFile, Photo
from photo_report.errors import (
    ApiFormatError,
    IdentityResolutionError,
    NetworkError,
    PayloadTooLargeError,
    ServerFaultError,
    ServerValidationError,
)
from photo_report.services.analysis import AnalysisClient
from photo_report.services.identity import resolve_client_id, resolve_photo_id
from photo_report.services.uploads import UploadClient

logger = logging.getLogger(__name__)

_DESCRIPTOR_KEYS = ("photos", "files", "uploadedFiles", "results")


@dataclass
class HttpxPhotoApiClient(UploadClient, AnalysisClient):
    """Photo API client implemented with httpx."""

    base_url: str
    http_client: httpx.AsyncClient
    timeout: float = 30.0

    @classmethod
    def create(
        cls, base_url: str, api_token: str | None = None, timeout: float = 30.0
    ) -> "HttpxPhotoApiClient":
        """Create a client with a managed httpx session."""
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else None
        return cls(
            base_url=base_url,
            http_client=httpx.AsyncClient(headers=headers),
            timeout=timeout,
        )

    async def upload_batch(
        self, report_id: str, files: list[LocalFile], client_ids: list[str]
    ) -> list[dict[str, object]]:
        """Upload small files in one multipart request."""
        payload = await self._request(
            "POST",
            "/api/photos/batch",
            data={"reportId": report_id, "clientIds": json.dumps(client_ids)},
            files=[
                ("photos", (file.name, file.read_bytes(), file.content_type))
                for file in files
            ],
        )
        return extract_file_descriptors(payload)

    async def init_chunked_upload(
        self, report_id: str, file: LocalFile, total_chunks: int, client_id: str
    ) -> str:
        """Open a chunked upload session and return its id."""
        payload = await self._request(
            "POST",
            "/api/photos/upload-chunk/init",
            json={
                "reportId": report_id,
                "filename": file.name,
                "contentType": file.content_type,
                "totalChunks": total_chunks,
                "clientId": client_id,
            },
        )
        data = _unwrap(payload)
        session_id = data.get("fileId") or data.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise ApiFormatError("Chunked upload init returned no session id")
        return session_id

    async def upload_chunk(
        self, session_id: str, chunk_index: int, total_chunks: int, chunk: bytes
    ) -> None:
        """Send one indexed chunk of a session."""
        await self._request(
            "POST",
            "/api/photos/upload-chunk",
            data={
                "fileId": session_id,
                "chunkIndex": str(chunk_index),
                "totalChunks": str(total_chunks),
            },
            files={
                "chunk": (f"chunk-{chunk_index}", chunk, "application/octet-stream")
            },
        )

    async def complete_chunked_upload(
        self, session_id: str, report_id: str
    ) -> dict[str, object]:
        """Finalize a chunked session and return the stored file descriptor."""
        payload = await self._request(
            "POST",
            "/api/photos/complete-upload",
            json={"fileId": session_id, "reportId": report_id},
        )
        data = _unwrap(payload)
        photo = data.get("photo", data)
        if not isinstance(photo, dict):
            raise ApiFormatError("Chunked upload completion returned no photo")
        return photo

    async def analyze(self, report_id: str, photos: list[Photo]) -> object:
        """Ask the backend to analyze stored photos by id."""
        photo_ids = []
        for photo in photos:
            photo_id = resolve_photo_id(photo)
            if photo_id is None:
                raise IdentityResolutionError(
                    f"Photo {photo.client_id} has no server id"
                )
            photo_ids.append(photo_id)
        return await self._request(
            "POST",
            "/api/photos/analyze",
            json={"reportId": report_id, "photoIds": photo_ids},
        )

    async def download_photo(self, photo_id: str, size: str = "original") -> bytes:
        """Fetch stored image bytes, optionally a smaller variant."""
        params = {"size": size} if size != "original" else None
        response = await self._send("GET", f"/api/photos/{photo_id}", params=params)
        return response.content

    async def delete_photo(self, photo_id: str) -> None:
        """Delete a stored photo."""
        await self._request("DELETE", f"/api/photos/{photo_id}")

    async def close(self) -> None:
        """Close the underlying HTTP client session."""
        await self.http_client.aclose()

    async def _request(self, method: str, path: str, **kwargs: object) -> object:
        response = await self._send(method, path, **kwargs)
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiFormatError(f"Non-JSON response from {path}") from exc
        if isinstance(payload, dict) and payload.get("success") is False:
            raise ServerValidationError(
                _error_message(payload) or "Request failed", response.status_code
            )
        return payload

    async def _send(self, method: str, path: str, **kwargs: object) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self.http_client.request(
                method, url, timeout=self.timeout, **kwargs
            )
        except httpx.TransportError as exc:
            raise NetworkError(str(exc) or type(exc).__name__) from exc
        _raise_for_status(response)
        return response


def extract_file_descriptors(payload: object) -> list[dict[str, object]]:
    """Pull uploaded file descriptors out of the backend's response envelope.

    Descriptors without an echoed client id get one from an ``idMapping``
    table when the response carries it.
    """
    data = _unwrap(payload) if isinstance(payload, Mapping) else payload
    descriptors: list[dict[str, object]] | None = None
    if isinstance(data, list):
        descriptors = [item for item in data if isinstance(item, dict)]
    elif isinstance(data, Mapping):
        for key in _DESCRIPTOR_KEYS:
            value = data.get(key)
            if isinstance(value, list):
                descriptors = [item for item in value if isinstance(item, dict)]
                break
    if descriptors is None:
        raise ApiFormatError("Upload response carried no file descriptors")

    mapping = data.get("idMapping") if isinstance(data, Mapping) else None
    if isinstance(mapping, Mapping):
        by_server_id = {str(server): str(client) for client, server in mapping.items()}
        for descriptor in descriptors:
            if resolve_client_id(descriptor) is None:
                server_id = resolve_photo_id(descriptor)
                if server_id and server_id in by_server_id:
                    descriptor["clientId"] = by_server_id[server_id]
    return descriptors


def _unwrap(payload: object) -> dict[str, object]:
    if not isinstance(payload, dict):
        return {}
    data = payload.get("data")
    if isinstance(data, dict):
        return data
    return payload


def _error_message(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("error", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, dict):
            nested = value.get("message")
            if isinstance(nested, str) and nested:
                return nested
    return None


def _raise_for_status(response: httpx.Response) -> None:
    status_code = response.status_code
    if status_code < 400:  # noqa: PLR2004
        return
    try:
        message = _error_message(response.json())
    except ValueError:
        message = None
    message = message or f"HTTP {status_code}"
    if status_code == 413:  # noqa: PLR2004
        raise PayloadTooLargeError(message, status_code)
    if status_code >= 500:  # noqa: PLR2004
        raise ServerFaultError(message, status_code)
    raise ServerValidationError(message, status_code)
