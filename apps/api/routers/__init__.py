"""Routers package."""

from . import (
    health,
    videos,
    events,
)
