"""Photo lifecycle state machine."""

from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

from photo_report.domain.photos import Photo, PhotoStatus
from photo_report.errors import InvalidTransitionError
from photo_report.services.identity import resolve_photo_id

TRANSITIONS: dict[PhotoStatus, frozenset[PhotoStatus]] = {
    PhotoStatus.PENDING: frozenset({PhotoStatus.UPLOADING, PhotoStatus.ERROR}),
    PhotoStatus.UPLOADING: frozenset({PhotoStatus.UPLOADED, PhotoStatus.ERROR}),
    PhotoStatus.UPLOADED: frozenset({PhotoStatus.ANALYZING, PhotoStatus.ERROR}),
    PhotoStatus.ANALYZING: frozenset({PhotoStatus.ANALYZED, PhotoStatus.ERROR}),
    PhotoStatus.ANALYZED: frozenset({PhotoStatus.ERROR}),
    PhotoStatus.ERROR: frozenset({PhotoStatus.PENDING}),
}

_REQUIREMENTS: dict[PhotoStatus, tuple[str, Callable[[Photo], bool]]] = {
    PhotoStatus.PENDING: (
        "a local file or a server id",
        lambda photo: photo.file is not None or photo.server_id is not None,
    ),
    PhotoStatus.UPLOADING: ("a local file", lambda photo: photo.file is not None),
    PhotoStatus.UPLOADED: (
        "a server id",
        lambda photo: resolve_photo_id(photo) is not None,
    ),
    PhotoStatus.ANALYZING: (
        "a server id",
        lambda photo: resolve_photo_id(photo) is not None,
    ),
    PhotoStatus.ANALYZED: (
        "a server id and analysis data",
        lambda photo: resolve_photo_id(photo) is not None
        and photo.analysis is not None
        and photo.analysis.has_content,
    ),
    PhotoStatus.ERROR: ("an error message", lambda photo: bool(photo.error)),
}


def next_states(status: PhotoStatus) -> frozenset[PhotoStatus]:
    """Return the statuses reachable from ``status``."""
    return TRANSITIONS.get(status, frozenset())


def can_transition(current: PhotoStatus, target: PhotoStatus) -> bool:
    """Return true when ``current -> target`` is an allowed transition."""
    return target in next_states(current)


def transition(photo: Photo, target: PhotoStatus, **changes: object) -> Photo:
    """Return a copy of ``photo`` moved to ``target`` with ``changes`` applied."""
    if not can_transition(photo.status, target):
        raise InvalidTransitionError(
            f"Invalid state transition from {photo.status} to {target}"
        )
    if target != PhotoStatus.ERROR:
        changes.setdefault("error", None)
    if target != PhotoStatus.ANALYZED:
        changes.setdefault("analysis", None)
    updated = replace(
        photo,
        status=target,
        last_transition=datetime.now(tz=UTC),
        **changes,
    )
    valid, message = validate_photo(updated)
    if not valid:
        raise InvalidTransitionError(message or f"Photo data invalid for {target}")
    return updated


def validate_photo(photo: Photo) -> tuple[bool, str | None]:
    """Check that a photo carries the data its status requires."""
    requirement = _REQUIREMENTS.get(photo.status)
    if requirement is None:
        return False, f"Unknown state: {photo.status}"
    if photo.analysis is not None and photo.status != PhotoStatus.ANALYZED:
        return False, f"Photo in state {photo.status} must not carry analysis"
    description, check = requirement
    if check(photo):
        return True, None
    return False, f"Photo in state {photo.status} requires {description}"


def can_upload(photo: Photo) -> bool:
    """True when the photo is pending and still holds its local file."""
    return photo.status == PhotoStatus.PENDING and photo.file is not None


def can_analyze(photo: Photo) -> bool:
    """True when the photo is uploaded and resolves to a server id."""
    return (
        photo.status == PhotoStatus.UPLOADED and resolve_photo_id(photo) is not None
    )


def mark_error(photo: Photo, message: str) -> Photo:
    """Move a photo to ``error`` from whatever state it is in."""
    if photo.status == PhotoStatus.ERROR:
        return replace(
            photo,
            error=message,
            analysis=None,
            last_transition=datetime.now(tz=UTC),
        )
    return transition(photo, PhotoStatus.ERROR, error=message, upload_progress=0)


def retry(photo: Photo) -> Photo:
    """Reset a failed photo to ``pending`` so it can be retried."""
    return transition(photo, PhotoStatus.PENDING, upload_progress=0)


def group_photos_by_status(photos: list[Photo]) -> dict[PhotoStatus, list[Photo]]:
    """Bucket photos by status, with an entry for every status."""
    groups: dict[PhotoStatus, list[Photo]] = {status: [] for status in PhotoStatus}
    for photo in photos:
        groups[photo.status].append(photo)
    return groups
