"""Damage analysis of photos with an LLM vision model."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from photo_report.domain.analysis import PhotoAnalysis
from photo_report.domain.photos import Photo
from photo_report.errors import AnalysisEmptyError, describe_error
from photo_report.services.identity import resolve_photo_id
from photo_report.services.preservation import PhotoDataPreserver, bytes_to_data_url

logger = logging.getLogger(__name__)

DAMAGE_SCHEMA: dict[str, object] = {
    "type": "object",
    "properties": {
        "description": {"type": "string"},
        "tags": {"type": "array", "items": {"type": "string"}},
        "damageDetected": {"type": "boolean"},
        "severity": {
            "type": "string",
            "enum": ["minor", "moderate", "severe", "critical", "unknown"],
        },
        "confidence": {"type": "number", "minimum": 0.0, "maximum": 1.0},
        "recommendedAction": {"anyOf": [{"type": "string"}, {"type": "null"}]},
    },
    "required": [
        "description",
        "tags",
        "damageDetected",
        "severity",
        "confidence",
        "recommendedAction",
    ],
    "additionalProperties": False,
}

DAMAGE_PROMPT = (
    "You are inspecting a photo taken for a property or roof inspection report. "
    "Describe what the photo shows in one or two sentences, list short tags for "
    "the visible materials and damage, say whether damage is present, rate its "
    "severity (minor, moderate, severe, critical, or unknown), give a confidence "
    "between 0 and 1, and suggest a recommended action if repairs are needed."
)


class VisionClient(Protocol):
    """Interface for LLM vision extraction."""

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
        """Return structured vision extraction data."""


@dataclass
class DamageVisionService:
    """Service that prepares damage prompts and validates results."""

    client: VisionClient
    model: str
    reasoning_effort: str | None
    store: bool

    async def analyze(
        self, image_bytes: bytes, content_type: str = "image/jpeg"
    ) -> PhotoAnalysis:
        """Analyze one image via the configured client."""
        raw = await self.client.extract(
            model=self.model,
            reasoning_effort=self.reasoning_effort,
            store=self.store,
            image_data_url=bytes_to_data_url(image_bytes, content_type),
            schema=DAMAGE_SCHEMA,
            prompt=DAMAGE_PROMPT,
        )
        return PhotoAnalysis.model_validate(raw)


@dataclass
class LocalVisionAnalysisClient:
    """Analysis client that sends local photo data straight to the vision model.

    Each photo is read from its best local source. Results use the flat
    ``results`` envelope; a photo that cannot be read or analyzed gets an
    entry carrying ``error`` instead of failing the whole batch.
    """

    vision: DamageVisionService
    preserver: PhotoDataPreserver

    async def analyze(self, report_id: str, photos: list[Photo]) -> object:
        entries = await asyncio.gather(*(self._analyze_one(photo) for photo in photos))
        logger.info(
            "Analyzed %d photos locally for report %s", len(entries), report_id
        )
        return {"results": list(entries)}

    async def _analyze_one(self, photo: Photo) -> dict[str, object]:
        photo_id = resolve_photo_id(photo) or photo.client_id.value
        image_bytes = await asyncio.to_thread(self.preserver.local_bytes, photo)
        if not image_bytes:
            message = describe_error(AnalysisEmptyError("No local image data"))
            return {"photoId": photo_id, "success": False, "error": message}
        try:
            analysis = await self.vision.analyze(image_bytes, photo.content_type)
        except Exception as exc:
            logger.exception("Vision analysis failed for %s", photo.original_name)
            return {"photoId": photo_id, "success": False, "error": describe_error(exc)}
        return {"photoId": photo_id, "success": True, "analysis": analysis.to_api()}
