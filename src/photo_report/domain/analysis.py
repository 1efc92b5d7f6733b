"""Models for photo analysis results."""

import logging

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

SEVERITY_LEVELS = ("minor", "moderate", "severe", "unknown")


class PhotoAnalysis(BaseModel):
    """Structured AI analysis attached to a photo."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    description: str = ""
    tags: list[str] = Field(default_factory=list)
    damage_detected: bool = Field(
        default=False,
        validation_alias=AliasChoices("damage_detected", "damageDetected"),
    )
    severity: str = "unknown"
    confidence: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("confidence", "confidenceScore"),
    )
    recommended_action: str | None = Field(
        default=None,
        validation_alias=AliasChoices("recommended_action", "recommendedAction"),
    )

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: object) -> str:
        return normalize_severity(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        if isinstance(value, list):
            return [str(tag) for tag in value if str(tag).strip()]
        return []

    @field_validator("confidence", mode="before")
    @classmethod
    def _scale_confidence(cls, value: object) -> object:
        # Some responses report confidence as a percentage.
        if isinstance(value, int | float) and 1.0 < value <= 100.0:  # noqa: PLR2004
            return value / 100.0
        if value is None:
            return 0.0
        return value

    @property
    def has_content(self) -> bool:
        """True when the analysis carries anything a reviewer can use."""
        return bool(self.description.strip() or self.tags or self.damage_detected)

    def to_api(self) -> dict[str, object]:
        """Serialize using the backend's camelCase field names."""
        return {
            "description": self.description,
            "tags": list(self.tags),
            "damageDetected": self.damage_detected,
            "severity": self.severity,
            "confidence": self.confidence,
            "recommendedAction": self.recommended_action,
        }


def normalize_severity(value: object) -> str:  # noqa: PLR0911
    """Map free-form severity text onto the supported levels."""
    if value is None:
        return "unknown"
    lowered = str(value).strip().lower()
    if not lowered or lowered == "unknown":
        return "unknown"
    if lowered in {"minor", "moderate", "severe"}:
        return lowered
    if "moderate" in lowered and "severe" in lowered:
        return "severe"
    if "minor" in lowered and "moderate" in lowered:
        return "moderate"
    if "minor" in lowered or "low" in lowered:
        return "minor"
    if "moderate" in lowered or "medium" in lowered:
        return "moderate"
    if any(word in lowered for word in ("major", "high", "severe", "critical")):
        return "severe"
    logger.warning("Unrecognized severity value %r, defaulting to minor", value)
    return "minor"
