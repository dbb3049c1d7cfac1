"""
Video Safety Platform - FastAPI Backend
Main application entry point: upload, streaming, live events and the
asynchronous sensitivity pipeline.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, videos, events
from services.events import EventBroadcaster
from services.media_store import MediaStore
from services.processing import ProcessingOrchestrator
from services.sensitivity import SensitivityAnalyzer
from services.video_repository import VideoRepository


def build_orchestrator() -> ProcessingOrchestrator:
    """Wire the pipeline against the configured database and media root."""
    return ProcessingOrchestrator(
        repository=VideoRepository(),
        broadcaster=EventBroadcaster(queue_size=settings.EVENT_QUEUE_SIZE),
        media_store=MediaStore(settings.MEDIA_ROOT),
        analyzer=SensitivityAnalyzer(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Video Safety Platform API...")
    validate_security_settings()
    orchestrator: ProcessingOrchestrator = app.state.orchestrator
    orchestrator.media_store.ensure_layout()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.RECOVER_STALLED_ON_STARTUP:
        try:
            recovered = await orchestrator.repository.mark_stalled_failed(
                settings.STALLED_PROCESSING_MAX_AGE_MINUTES
            )
            if recovered:
                print(f"♻️ Marked {recovered} stalled videos as failed after startup.")
        except Exception as exc:
            print(f"⚠️ Stalled video recovery skipped: {exc}")
    yield
    # Shutdown
    active = orchestrator.active_video_ids()
    if active:
        print(f"🛑 Dropping {len(active)} in-flight processing runs.")
    await orchestrator.shutdown()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Video Safety Platform API",
    description="Upload videos, screen them for sensitive content and stream them back",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.orchestrator = build_orchestrator()

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(videos.router, prefix="/videos", tags=["Videos"])
app.include_router(events.router, prefix="/events", tags=["Events"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Video Safety Platform API",
        "version": "0.1.0",
        "status": "running"
    }
