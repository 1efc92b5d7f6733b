"""Identity resolution for photos across client and server representations."""

import re
import secrets
import time
from collections.abc import Mapping

from photo_report.domain.photos import PersistedId, Photo, PhotoId, TemporaryId

_OBJECT_ID = re.compile(r"^[0-9a-fA-F]{24}$")
_UUID_COMPACT = re.compile(r"^[0-9a-fA-F]{32}$")
_UUID_DASHED = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

SERVER_ID_FIELDS = ("_id", "fileId", "id", "serverId", "photoId")
CLIENT_ID_FIELDS = ("clientId", "client_id", "originalClientId")

_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


def is_document_id(value: object) -> bool:
    """Return true when the value looks like a server-assigned document id."""
    if value is None or isinstance(value, bool):
        return False
    text = str(value)
    return bool(
        _OBJECT_ID.match(text) or _UUID_COMPACT.match(text) or _UUID_DASHED.match(text)
    )


def generate_temporary_id(prefix: str = "temp") -> TemporaryId:
    """Create a client-side id that can never be mistaken for a document id."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(7))
    return TemporaryId(f"{prefix}_{int(time.time() * 1000)}_{suffix}")


def parse_photo_id(raw: str) -> PhotoId:
    """Classify a wire-format id string into the tagged id variant."""
    if is_document_id(raw):
        return PersistedId(raw)
    return TemporaryId(raw)


def resolve_photo_id(candidate: object) -> str | None:
    """Return the best server id for a photo-like object, or None.

    Direct id fields win, then an id embedded at the end of a storage path,
    then any string property shaped like a document id. ``None`` means the
    photo has not been persisted yet.
    """
    if candidate is None:
        return None
    if isinstance(candidate, Photo):
        return _resolve_from_photo(candidate)
    if isinstance(candidate, PersistedId):
        return candidate.value
    if isinstance(candidate, TemporaryId):
        return None
    if isinstance(candidate, str):
        return candidate if is_document_id(candidate) else None
    if not isinstance(candidate, Mapping):
        return None

    for key in SERVER_ID_FIELDS:
        value = candidate.get(key)
        if is_document_id(value):
            return str(value)

    path_id = _id_from_path(candidate.get("path"))
    if path_id:
        return path_id

    for key, value in candidate.items():
        if key in CLIENT_ID_FIELDS:
            continue
        if isinstance(value, str) and is_document_id(value):
            return value
    return None


def resolve_client_id(candidate: Mapping[str, object]) -> str | None:
    """Return the client id echoed back by the server, if any."""
    for key in CLIENT_ID_FIELDS:
        value = candidate.get(key)
        if isinstance(value, str) and value:
            return value
    metadata = candidate.get("metadata")
    if isinstance(metadata, Mapping):
        value = metadata.get("clientId")
        if isinstance(value, str) and value:
            return value
    return None


def filter_photos_with_server_ids(photos: list[Photo]) -> list[Photo]:
    """Keep only photos that resolve to a persisted id."""
    return [photo for photo in photos if resolve_photo_id(photo) is not None]


def _resolve_from_photo(photo: Photo) -> str | None:
    if photo.server_id is not None:
        return photo.server_id.value
    if photo.server is not None:
        return _id_from_path(photo.server.path)
    return None


def _id_from_path(path: object) -> str | None:
    if not isinstance(path, str) or not path:
        return None
    last = path.rstrip("/").split("/")[-1]
    if is_document_id(last):
        return last
    base = last.split("?", maxsplit=1)[0]
    if is_document_id(base):
        return base
    return None
