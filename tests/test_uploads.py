"""Tests for the batch upload coordinator."""

import asyncio
import os
from dataclasses import dataclass

import pytest

from photo_report.domain.photos import (
    LocalFile,
    LocalRepresentation,
    Photo,
    PhotoStatus,
)
from photo_report.errors import NetworkError, ServerValidationError
from photo_report.services.identity import resolve_photo_id
from photo_report.services.uploads import (
    TRANSFER_PROGRESS_CEILING,
    UploadCoordinator,
    UploadItemStatus,
)
from tests.conftest import FakeUploadClient, RecordingSleep, make_photo, object_id


@dataclass
class ReversingUploadClient(FakeUploadClient):
    """Returns descriptors in the opposite order of the request."""

    async def upload_batch(
        self, report_id: str, files: list[LocalFile], client_ids: list[str]
    ) -> list[dict[str, object]]:
        descriptors = await super().upload_batch(report_id, files, client_ids)
        return list(reversed(descriptors))


def _files(count: int, size: int = 64) -> list[LocalFile]:
    return [
        LocalFile.from_bytes(f"photo-{index}.jpg", os.urandom(size), "image/jpeg")
        for index in range(count)
    ]


def test_twelve_files_never_exceed_three_in_flight() -> None:
    client = FakeUploadClient()
    coordinator = UploadCoordinator(client=client, max_concurrent_uploads=3)
    photos = [make_photo(f"photo-{index}.jpg") for index in range(12)]

    result = asyncio.run(coordinator.upload_photos(photos, "report-1"))

    assert client.max_in_flight == 3
    assert all(sample <= 3 for sample in client.samples)
    assert sum(len(call) for call in client.batch_calls) == 12
    assert all(len(call) <= 3 for call in client.batch_calls)
    assert len(result.photos) == 12
    assert {photo.status for photo in result.photos} <= {
        PhotoStatus.UPLOADED,
        PhotoStatus.ERROR,
    }
    assert result.succeeded == 12
    assert len(result.id_mapping) == 12


def test_uploaded_photos_resolve_to_server_ids() -> None:
    coordinator = UploadCoordinator(client=FakeUploadClient())
    photos = [make_photo("a.jpg"), make_photo("b.jpg")]

    result = asyncio.run(coordinator.upload_photos(photos, "report-1"))

    for original, uploaded in zip(photos, result.photos, strict=True):
        server_id = resolve_photo_id(uploaded)
        assert server_id is not None
        assert server_id != original.client_id.value
        assert result.id_mapping[original.client_id.value] == server_id
        assert uploaded.client_id == original.client_id
        assert uploaded.upload_progress == 100
        assert uploaded.local.file == original.local.file
        assert uploaded.server is not None
        assert uploaded.server.thumbnail_url is not None


def test_one_failed_file_leaves_others_uploaded() -> None:
    client = FakeUploadClient(failing_names={"photo-2.jpg"})
    coordinator = UploadCoordinator(client=client, max_concurrent_uploads=5)
    photos = [make_photo(f"photo-{index}.jpg") for index in range(5)]

    result = asyncio.run(coordinator.upload_photos(photos, "report-1"))

    statuses = {photo.original_name: photo.status for photo in result.photos}
    assert statuses.pop("photo-2.jpg") == PhotoStatus.ERROR
    assert set(statuses.values()) == {PhotoStatus.UPLOADED}
    failed = next(p for p in result.photos if p.original_name == "photo-2.jpg")
    assert failed.error == "Corrupt image"
    assert (result.succeeded, result.failed) == (4, 1)


def test_reconciles_by_client_id_not_position() -> None:
    coordinator = UploadCoordinator(client=ReversingUploadClient())
    photos = [make_photo(f"photo-{index}.jpg") for index in range(3)]

    result = asyncio.run(coordinator.upload_photos(photos, "report-1"))

    # The fake issues ids in request order and replies in reverse.
    assert [resolve_photo_id(photo) for photo in result.photos] == [
        object_id(1),
        object_id(2),
        object_id(3),
    ]
    assert all(photo.status == PhotoStatus.UPLOADED for photo in result.photos)


def test_descriptors_without_client_id_fail_individually() -> None:
    client = FakeUploadClient(echo_client_ids=False)
    coordinator = UploadCoordinator(client=client)
    photos = [make_photo("a.jpg"), make_photo("b.jpg")]

    result = asyncio.run(coordinator.upload_photos(photos, "report-1"))

    assert all(photo.status == PhotoStatus.ERROR for photo in result.photos)
    assert all(
        photo.error == "Photo not found in upload results" for photo in result.photos
    )


def test_request_failure_shares_one_message() -> None:
    client = FakeUploadClient(batch_errors=[NetworkError("offline")])
    coordinator = UploadCoordinator(client=client, max_concurrent_uploads=4)
    photos = [make_photo(f"photo-{index}.jpg") for index in range(4)]

    result = asyncio.run(coordinator.upload_photos(photos, "report-1"))

    assert len(client.batch_calls) == 1
    assert {photo.error for photo in result.photos} == {"Network error: offline"}
    assert result.failed == 4


def test_ineligible_photos_are_not_sent() -> None:
    client = FakeUploadClient()
    coordinator = UploadCoordinator(client=client)
    without_file = make_photo("gone.jpg", local=LocalRepresentation())
    failed = make_photo("failed.jpg", status=PhotoStatus.ERROR, error="boom")
    ready = make_photo("ready.jpg")

    result = asyncio.run(
        coordinator.upload_photos([without_file, failed, ready], "report-1")
    )

    assert client.batch_calls == [["ready.jpg"]]
    assert result.rejected == 2
    assert result.photos[0] == without_file
    assert result.photos[1] == failed
    assert result.photos[2].status == PhotoStatus.UPLOADED


def test_missing_report_id_is_rejected() -> None:
    coordinator = UploadCoordinator(client=FakeUploadClient())

    with pytest.raises(ValueError, match="Report ID"):
        asyncio.run(coordinator.upload_photos([make_photo()], None))
    with pytest.raises(ValueError, match="Report ID"):
        coordinator.add_to_queue(_files(1), "")


def test_large_files_use_chunked_upload_with_retry() -> None:
    client = FakeUploadClient(chunk_failures={2: 2})
    sleep = RecordingSleep()
    coordinator = UploadCoordinator(
        client=client,
        chunk_size=32,
        chunked_upload_threshold=100,
        retry_delay=0.5,
        sleep=sleep,
    )
    data = os.urandom(200)
    photo = make_photo("large.jpg", data=data)

    result = asyncio.run(coordinator.upload_photos([photo], "report-1"))

    assert client.batch_calls == []
    assert list(client.sessions) == ["session-1"]
    assert client.assembled("session-1") == data
    assert sleep.delays == [0.5, 1.0]
    assert result.photos[0].status == PhotoStatus.UPLOADED


def test_chunk_failure_after_retries_marks_error() -> None:
    client = FakeUploadClient(chunk_failures={0: 5})
    coordinator = UploadCoordinator(
        client=client,
        chunk_size=32,
        chunked_upload_threshold=100,
        max_retries=1,
        sleep=RecordingSleep(),
    )
    photo = make_photo("large.jpg", data=os.urandom(150))

    result = asyncio.run(coordinator.upload_photos([photo], "report-1"))

    assert result.photos[0].status == PhotoStatus.ERROR
    assert result.photos[0].error == "Network error: connection reset"


def test_progress_reaches_100_only_after_reconciliation() -> None:
    coordinator = UploadCoordinator(
        client=FakeUploadClient(),
        max_concurrent_uploads=2,
        chunk_size=16,
        chunked_upload_threshold=64,
        sleep=RecordingSleep(),
    )
    photos = [make_photo("big.jpg", data=os.urandom(160))] + [
        make_photo(f"photo-{index}.jpg") for index in range(4)
    ]
    seen: list[int] = []

    asyncio.run(coordinator.upload_photos(photos, "report-1", seen.append))

    assert seen[-1] == 100
    assert all(value < 100 for value in seen[:-1])
    assert coordinator.completed == []
    assert coordinator.overall_progress() == 0


def test_consecutive_runs_report_their_own_progress() -> None:
    client = FakeUploadClient()
    coordinator = UploadCoordinator(client=client, max_concurrent_uploads=3)
    first = [make_photo(f"photo-{index}.jpg") for index in range(9)]
    asyncio.run(coordinator.upload_photos(first, "report-1"))
    seen: list[int] = []

    result = asyncio.run(
        coordinator.upload_photos([make_photo("late.jpg")], "report-1", seen.append)
    )

    assert result.succeeded == 1
    assert seen == [0, 100]
    assert coordinator.completed == []
    assert coordinator.failed == []


def test_claim_sees_uploading_copies_before_sending() -> None:
    client = FakeUploadClient()
    coordinator = UploadCoordinator(client=client)
    claimed: list[tuple[list[PhotoStatus], int]] = []

    def claim(photos: list[Photo]) -> None:
        claimed.append(([photo.status for photo in photos], len(client.batch_calls)))

    asyncio.run(
        coordinator.upload_photos(
            [make_photo("a.jpg"), make_photo("b.jpg")], "report-1", claim=claim
        )
    )

    assert claimed == [([PhotoStatus.UPLOADING, PhotoStatus.UPLOADING], 0)]


def test_in_flight_progress_is_capped() -> None:
    coordinator = UploadCoordinator(client=FakeUploadClient())
    item = coordinator.add_to_queue(_files(1), "report-1")[0]

    coordinator._set_progress(item, 100)

    assert item.progress == TRANSFER_PROGRESS_CEILING


def test_cancel_drops_queued_and_discards_in_flight() -> None:
    client = FakeUploadClient()
    coordinator = UploadCoordinator(client=client, max_concurrent_uploads=1)
    items = coordinator.add_to_queue(_files(4), "report-1")

    async def scenario() -> None:
        task = asyncio.create_task(coordinator.process_queue())
        while not coordinator.active:
            await asyncio.sleep(0)
        cancelled = coordinator.cancel([items[0].item_id, items[2].client_id])
        assert {item.item_id for item in cancelled} == {
            items[0].item_id,
            items[2].item_id,
        }
        assert items[2] not in coordinator.queue
        await task

    asyncio.run(scenario())

    sent = [name for call in client.batch_calls for name in call]
    assert "photo-0.jpg" in sent
    assert "photo-2.jpg" not in sent
    assert items[0].status == UploadItemStatus.CANCELLED
    assert items[0].result is None
    assert items[2].status == UploadItemStatus.CANCELLED
    assert items[1].status == UploadItemStatus.COMPLETED
    assert items[3].status == UploadItemStatus.COMPLETED


def test_retry_failed_requeues_items() -> None:
    client = FakeUploadClient(batch_errors=[ServerValidationError("Bad file", 400)])
    coordinator = UploadCoordinator(client=client)
    item = coordinator.add_to_queue(_files(1), "report-1")[0]

    asyncio.run(coordinator.process_queue())
    assert item.status == UploadItemStatus.FAILED
    assert item.error == "Bad file"

    retried = coordinator.retry_failed([item.item_id])
    assert retried == [item]
    assert coordinator.failed == []
    asyncio.run(coordinator.process_queue())

    assert item.status == UploadItemStatus.COMPLETED
    assert item.retry_count == 1
    coordinator.clear_completed()
    coordinator.clear_failed()
    assert coordinator.completed == []
    assert coordinator.overall_progress() == 0


def test_metadata_client_ids_are_kept() -> None:
    coordinator = UploadCoordinator(client=FakeUploadClient())

    items = coordinator.add_to_queue(
        _files(2), "report-1", [{"clientId": "temp_1_aaaaaaa"}]
    )

    assert items[0].client_id == "temp_1_aaaaaaa"
    assert items[1].client_id.startswith("client_")
