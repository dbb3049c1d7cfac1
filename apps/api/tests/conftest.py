from pathlib import Path
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from routers import rate_limit


@pytest.fixture(autouse=True)
def disable_upload_quota():
    """Routes under test run without quotas; the quota dependency is tested on its own app."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit.reset_local_counters()
    yield
    rate_limit.reset_local_counters()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'videos.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


def fake_extract_frames(video_path, count, output_dir, width=640, height=480):
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    frames = []
    for index in range(1, count + 1):
        frame = Path(output_dir) / f"frame-{index}.jpg"
        frame.write_bytes(b"jpeg")
        frames.append(str(frame))
    return frames


def fake_extract_thumbnail(video_path, at_fraction, output_path, width=320):
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    Path(output_path).write_bytes(b"thumb")
    return output_path


def media_patches(duration=12.0):
    """Stand-ins for the ffmpeg calls the pipeline makes; frames land on disk as tiny files."""
    return (
        patch("services.processing.extract_frames", side_effect=fake_extract_frames),
        patch("services.processing.extract_thumbnail", side_effect=fake_extract_thumbnail),
        patch("services.processing.probe_duration", return_value=duration),
    )
