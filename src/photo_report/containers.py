"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from photo_report.adapters.openai_vision_client import OpenAIVisionClient
from photo_report.adapters.photo_api_client import HttpxPhotoApiClient
from photo_report.config import Settings, parse_api_base_url
from photo_report.services.analysis import AnalysisClient, AnalysisCoordinator
from photo_report.services.backup import ReportBackupStore
from photo_report.services.photo_store import PhotoStore
from photo_report.services.preservation import BlobUrlRegistry, PhotoDataPreserver
from photo_report.services.uploads import UploadCoordinator
from photo_report.services.vision import DamageVisionService, LocalVisionAnalysisClient

ANALYSIS_MODES = ("server", "local")


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    api_client: HttpxPhotoApiClient
    preserver: PhotoDataPreserver
    upload_coordinator: UploadCoordinator
    analysis_coordinator: AnalysisCoordinator
    backup_store: ReportBackupStore
    photo_store: PhotoStore
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    if resolved_settings.analysis_mode not in ANALYSIS_MODES:
        raise ValueError(f"Unknown analysis mode: {resolved_settings.analysis_mode}")

    api_client = HttpxPhotoApiClient.create(
        base_url=parse_api_base_url(resolved_settings.api_base_url),
        api_token=resolved_settings.api_token,
        timeout=resolved_settings.api_timeout_seconds,
    )
    preserver = PhotoDataPreserver(
        registry=BlobUrlRegistry(),
        eager_data_url_max_bytes=resolved_settings.eager_data_url_max_bytes,
    )

    vision_client: OpenAIVisionClient | None = None
    analysis_client: AnalysisClient = api_client
    if resolved_settings.analysis_mode == "local":
        if not resolved_settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required for local analysis")
        vision_client = OpenAIVisionClient.create(resolved_settings.openai_api_key)
        analysis_client = LocalVisionAnalysisClient(
            vision=DamageVisionService(
                client=vision_client,
                model=resolved_settings.openai_model,
                reasoning_effort=resolved_settings.openai_reasoning_effort,
                store=resolved_settings.openai_store,
            ),
            preserver=preserver,
        )

    async def close_resources() -> None:
        preserver.registry.revoke_all()
        await api_client.close()
        if vision_client is not None:
            await vision_client.close()

    return AppContainer(
        settings=resolved_settings,
        api_client=api_client,
        preserver=preserver,
        upload_coordinator=UploadCoordinator.from_settings(
            api_client, resolved_settings
        ),
        analysis_coordinator=AnalysisCoordinator.from_settings(
            analysis_client, resolved_settings
        ),
        backup_store=ReportBackupStore(Path(resolved_settings.backup_path)),
        photo_store=PhotoStore(),
        close_resources=close_resources,
    )
