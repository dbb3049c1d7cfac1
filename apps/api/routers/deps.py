"""Accessors for the process-wide services stored on app.state."""

from fastapi import Request

from services.events import EventBroadcaster
from services.media_store import MediaStore
from services.processing import ProcessingOrchestrator


def get_orchestrator(request: Request) -> ProcessingOrchestrator:
    return request.app.state.orchestrator


def get_broadcaster(request: Request) -> EventBroadcaster:
    return request.app.state.orchestrator.broadcaster


def get_media_store(request: Request) -> MediaStore:
    return request.app.state.orchestrator.media_store
