"""ASGI entrypoint for the photo report API."""

from photo_report.api.app import create_app
from photo_report.containers import build_container

app = create_app(build_container())
