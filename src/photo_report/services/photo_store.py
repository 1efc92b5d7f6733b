"""In-memory photo list shared by the request handlers."""

from dataclasses import dataclass, field

from photo_report.domain.photos import Photo, PhotoStatus


@dataclass
class PhotoStore:
    """Owns the current photo list and merges updates by client id.

    Coordinators work on copies; their results come back through
    :meth:`commit`, which ignores photos removed in the meantime.
    """

    _photos: dict[str, Photo] = field(default_factory=dict)

    def add(self, photo: Photo) -> Photo:
        self._photos[photo.client_id.value] = photo
        return photo

    def find(self, key: str) -> Photo | None:
        """Look a photo up by client id or server id."""
        photo = self._photos.get(key)
        if photo is not None:
            return photo
        for candidate in self._photos.values():
            if candidate.server_id is not None and candidate.server_id.value == key:
                return candidate
        return None

    def get(self, key: str) -> Photo:
        photo = self.find(key)
        if photo is None:
            raise KeyError(key)
        return photo

    def list_photos(self, status: PhotoStatus | None = None) -> list[Photo]:
        photos = list(self._photos.values())
        if status is None:
            return photos
        return [photo for photo in photos if photo.status == status]

    def commit(self, photos: list[Photo]) -> list[Photo]:
        """Store updated copies of photos that are still present."""
        committed = []
        for photo in photos:
            key = photo.client_id.value
            if key in self._photos:
                self._photos[key] = photo
                committed.append(photo)
        return committed

    def remove(self, key: str) -> Photo:
        photo = self.get(key)
        del self._photos[photo.client_id.value]
        return photo

    def clear(self) -> list[Photo]:
        removed = list(self._photos.values())
        self._photos.clear()
        return removed

    def __len__(self) -> int:
        return len(self._photos)
