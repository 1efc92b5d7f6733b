"""Sequential batch analysis of uploaded photos."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from pydantic import ValidationError

from photo_report.domain.analysis import PhotoAnalysis
from photo_report.domain.photos import Photo, PhotoStatus
from photo_report.errors import AnalysisEmptyError, ApiFormatError, describe_error
from photo_report.services.identity import resolve_photo_id
from photo_report.services.state_machine import can_analyze, mark_error, transition

if TYPE_CHECKING:
    from photo_report.config import Settings

logger = logging.getLogger(__name__)

_ANALYSIS_KEYS = ("analysis", "aiAnalysis")

AnalysisProgressCallback = Callable[[int, int], None]
ClaimHook = Callable[[list[Photo]], object]


class AnalysisClient(Protocol):
    """Interface for whatever performs the AI analysis."""

    async def analyze(self, report_id: str, photos: list[Photo]) -> object:
        """Analyze photos and return the raw result envelope."""


def results_envelope(payload: object) -> list[object] | None:
    """``{"results": [...]}``"""
    if isinstance(payload, Mapping) and isinstance(payload.get("results"), list):
        return payload["results"]
    return None


def nested_data_envelope(payload: object) -> list[object] | None:
    """``{"data": {"results": [...]}}`` or ``{"data": {"photos": [...]}}``"""
    if not isinstance(payload, Mapping):
        return None
    data = payload.get("data")
    if isinstance(data, list):
        return data
    if isinstance(data, Mapping):
        for key in ("results", "photos"):
            if isinstance(data.get(key), list):
                return data[key]
    return None


def photos_envelope(payload: object) -> list[object] | None:
    """``{"photos": [...]}``"""
    if isinstance(payload, Mapping) and isinstance(payload.get("photos"), list):
        return payload["photos"]
    return None


def bare_list_envelope(payload: object) -> list[object] | None:
    return payload if isinstance(payload, list) else None


ENVELOPE_STRATEGIES: tuple[Callable[[object], list[object] | None], ...] = (
    results_envelope,
    nested_data_envelope,
    photos_envelope,
    bare_list_envelope,
)


def extract_analysis_entries(payload: object) -> list[object]:
    """Return the per-photo entries from the first envelope shape that fits."""
    for strategy in ENVELOPE_STRATEGIES:
        entries = strategy(payload)
        if entries is not None:
            return entries
    raise ApiFormatError("Analysis response carried no results")


def match_entries(
    photos: list[Photo], entries: list[object]
) -> list[Mapping[str, object] | None]:
    """Pair each photo with its result entry, or None when nothing matches.

    Echoed ids win. An entry without an id is used positionally, and only
    when the response has exactly one entry per submitted photo.
    """
    by_id: dict[str, Mapping[str, object]] = {}
    for entry in entries:
        entry_id = _entry_photo_id(entry)
        if entry_id is not None and isinstance(entry, Mapping):
            by_id[entry_id] = entry
    positional = len(entries) == len(photos)

    matched: list[Mapping[str, object] | None] = []
    for index, photo in enumerate(photos):
        photo_id = resolve_photo_id(photo)
        entry = by_id.get(photo_id) if photo_id else None
        if entry is None and positional:
            candidate = entries[index]
            if isinstance(candidate, Mapping) and _entry_photo_id(candidate) is None:
                entry = candidate
        matched.append(entry)
    return matched


def analysis_from_entry(entry: Mapping[str, object]) -> PhotoAnalysis:
    """Validate an entry into a non-empty analysis or raise."""
    error = entry.get("error")
    if entry.get("success") is False or (isinstance(error, str) and error):
        raise AnalysisEmptyError(
            error if isinstance(error, str) and error else "Analysis failed"
        )
    raw: object = entry
    for key in _ANALYSIS_KEYS:
        if key in entry:
            raw = entry[key]
            break
    else:
        if isinstance(entry.get("data"), Mapping):
            raw = entry["data"]
    if not isinstance(raw, Mapping) or not raw:
        raise AnalysisEmptyError("Analysis returned no data")
    try:
        analysis = PhotoAnalysis.model_validate(dict(raw))
    except ValidationError as exc:
        raise ApiFormatError(f"Malformed analysis result: {exc}") from exc
    if not analysis.has_content:
        raise AnalysisEmptyError("Analysis returned no data")
    return analysis


@dataclass(frozen=True)
class AnalysisFailure:
    """A batch that failed, wholly or for some of its photos."""

    batch_index: int
    photo_ids: list[str]
    message: str


@dataclass(frozen=True)
class AnalysisBatchResult:
    """Outcome of analyzing a set of photos."""

    photos: list[Photo]
    succeeded: int
    failed: int
    skipped: int = 0
    failures: list[AnalysisFailure] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return f"{self.succeeded} of {self.succeeded + self.failed} analyzed"


@dataclass
class AnalysisCoordinator:
    """Runs analysis in fixed-size batches, one batch at a time."""

    client: AnalysisClient
    batch_size: int = 10
    batch_delay: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

    @classmethod
    def from_settings(
        cls, client: AnalysisClient, settings: "Settings"
    ) -> "AnalysisCoordinator":
        return cls(
            client=client,
            batch_size=settings.analysis_batch_size,
            batch_delay=settings.analysis_batch_delay_seconds,
        )

    async def analyze_photos(
        self,
        report_id: str | None,
        photos: list[Photo],
        progress_callback: AnalysisProgressCallback | None = None,
        claim: ClaimHook | None = None,
    ) -> AnalysisBatchResult:
        """Analyze uploaded photos and return patched copies.

        Every eligible photo moves to ``analyzing`` before the first request
        and ``claim`` receives those copies. Batches run strictly in order
        with ``batch_delay`` seconds between them. A failed batch marks its
        photos as errors and the run carries on with the next batch.
        """
        if not report_id:
            raise ValueError("Report ID is required for analysis")

        eligible = [photo for photo in photos if can_analyze(photo)]
        skipped = len(photos) - len(eligible)
        if skipped:
            logger.warning("Skipping %d photos that cannot be analyzed", skipped)

        analyzing = [transition(photo, PhotoStatus.ANALYZING) for photo in eligible]
        if claim is not None and analyzing:
            claim(analyzing)

        updated: dict[str, Photo] = {}
        failures: list[AnalysisFailure] = []
        batches = [
            analyzing[start : start + self.batch_size]
            for start in range(0, len(analyzing), self.batch_size)
        ]
        done = 0
        for index, batch in enumerate(batches):
            if index > 0 and self.batch_delay > 0:
                await self.sleep(self.batch_delay)
            results, failure = await self._analyze_batch(report_id, index, batch)
            if failure is not None:
                failures.append(failure)
            for photo in results:
                updated[photo.client_id.value] = photo
            done += len(batch)
            if progress_callback is not None:
                progress_callback(done, len(eligible))

        succeeded = sum(
            1 for photo in updated.values() if photo.status == PhotoStatus.ANALYZED
        )
        result = AnalysisBatchResult(
            photos=[updated.get(photo.client_id.value, photo) for photo in photos],
            succeeded=succeeded,
            failed=len(eligible) - succeeded,
            skipped=skipped,
            failures=failures,
        )
        logger.info(
            "Analysis for report %s finished: %s", report_id, result.summary
        )
        return result

    async def _analyze_batch(
        self, report_id: str, index: int, batch: list[Photo]
    ) -> tuple[list[Photo], AnalysisFailure | None]:
        try:
            payload = await self.client.analyze(report_id, batch)
            entries = extract_analysis_entries(payload)
        except Exception as exc:
            message = describe_error(exc)
            logger.exception(
                "Analysis batch %d (%d photos) failed", index + 1, len(batch)
            )
            failure = AnalysisFailure(
                batch_index=index,
                photo_ids=[resolve_photo_id(photo) or "" for photo in batch],
                message=message,
            )
            return [mark_error(photo, message) for photo in batch], failure

        matched = match_entries(batch, entries)
        unmatched = [
            resolve_photo_id(photo) or photo.client_id.value
            for photo, entry in zip(batch, matched, strict=True)
            if entry is None
        ]
        failure = None
        if unmatched:
            logger.error(
                "Analysis batch %d: %d of %d photos had no matching result",
                index + 1,
                len(unmatched),
                len(batch),
            )
            failure = AnalysisFailure(
                batch_index=index,
                photo_ids=unmatched,
                message=f"No analysis result for {len(unmatched)} of "
                f"{len(batch)} photos",
            )
        results = []
        for photo, entry in zip(batch, matched, strict=True):
            if entry is None:
                results.append(mark_error(photo, "No analysis result for this photo"))
                continue
            try:
                analysis = analysis_from_entry(entry)
            except (AnalysisEmptyError, ApiFormatError) as exc:
                results.append(mark_error(photo, describe_error(exc)))
                continue
            results.append(transition(photo, PhotoStatus.ANALYZED, analysis=analysis))
        return results, failure


def _entry_photo_id(entry: object) -> str | None:
    if not isinstance(entry, Mapping):
        return None
    for key in ("photoId", "_id", "id", "fileId"):
        value = entry.get(key)
        if isinstance(value, str) and value:
            return value
    return None
