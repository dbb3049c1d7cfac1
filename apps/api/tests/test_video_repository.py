import pytest
import pytest_asyncio

from models.user import User
from services.video_repository import VideoRepository


@pytest_asyncio.fixture
async def repository(session_maker):
    async with session_maker() as session:
        session.add(User(id="uploader-a", email="a@example.com", role="editor", tenant_id="tenant-a"))
        session.add(User(id="uploader-b", email="b@example.com", role="editor", tenant_id="tenant-b"))
        await session.commit()

    return VideoRepository(session_maker)


async def _create(repository: VideoRepository, video_id: str, tenant_id: str = "tenant-a", title: str = "Clip"):
    uploader = "uploader-a" if tenant_id == "tenant-a" else "uploader-b"
    return await repository.create_video(
        id=video_id,
        title=title,
        filename=f"{video_id}.mp4",
        file_path=f"/media/videos/{video_id}.mp4",
        mime_type="video/mp4",
        file_size_bytes=1024,
        uploader_id=uploader,
        tenant_id=tenant_id,
    )


@pytest.mark.asyncio
async def test_new_video_starts_uploaded_with_zero_progress(repository):
    video = await _create(repository, "v1")
    assert video.status == "uploaded"
    assert video.processing_progress == 0
    assert video.duration_seconds is None
    assert video.thumbnail_path is None


@pytest.mark.asyncio
async def test_partial_updates_leave_other_fields_untouched(repository):
    await _create(repository, "v1")
    await repository.mark_processing("v1")
    await repository.set_progress("v1", 54)

    await repository.set_duration("v1", 12.5)
    await repository.set_thumbnail("v1", "/media/thumbnails/v1.jpg")

    video = await repository.get_video("v1")
    assert video.status == "processing"
    assert video.processing_progress == 54
    assert video.duration_seconds == 12.5
    assert video.thumbnail_path == "/media/thumbnails/v1.jpg"

    await repository.set_analysis_result("v1", {"overall": {"isSafe": True}})
    video = await repository.get_video("v1")
    assert video.analysis_results == {"overall": {"isSafe": True}}
    assert video.duration_seconds == 12.5
    assert video.processing_progress == 54


@pytest.mark.asyncio
async def test_progress_never_moves_backwards_within_a_run(repository):
    await _create(repository, "v1")
    await repository.mark_processing("v1")
    assert await repository.set_progress("v1", 66) is True
    assert await repository.set_progress("v1", 30) is False

    video = await repository.get_video("v1")
    assert video.processing_progress == 66

    await repository.mark_processing("v1")
    video = await repository.get_video("v1")
    assert video.processing_progress == 0


@pytest.mark.asyncio
async def test_terminal_status_sets_reason_and_completion(repository):
    await _create(repository, "v1")
    await repository.mark_processing("v1")
    await repository.set_status("v1", "flagged", flag_reason="Red-dominant frames detected", progress=100)

    video = await repository.get_video("v1")
    assert video.status == "flagged"
    assert video.flag_reason == "Red-dominant frames detected"
    assert video.processing_progress == 100

    await repository.mark_processing("v1")
    video = await repository.get_video("v1")
    assert video.flag_reason is None


@pytest.mark.asyncio
async def test_reads_are_scoped_to_tenant(repository):
    await _create(repository, "a1", tenant_id="tenant-a", title="Harbour sunrise")
    await _create(repository, "a2", tenant_id="tenant-a", title="City night")
    await _create(repository, "b1", tenant_id="tenant-b", title="Harbour walk")

    assert await repository.get_video("a1", tenant_id="tenant-b") is None
    assert (await repository.get_video("a1", tenant_id="tenant-a")).id == "a1"

    tenant_b = await repository.list_videos("tenant-b")
    assert [v.id for v in tenant_b] == ["b1"]

    harbour_a = await repository.list_videos("tenant-a", search="harbour")
    assert [v.id for v in harbour_a] == ["a1"]


@pytest.mark.asyncio
async def test_list_filters_by_status(repository):
    await _create(repository, "a1")
    await _create(repository, "a2")
    await repository.set_status("a2", "safe", progress=100)

    assert [v.id for v in await repository.list_videos("tenant-a", status="safe")] == ["a2"]
    assert len(await repository.list_videos("tenant-a", status="all")) == 2


@pytest.mark.asyncio
async def test_delete_removes_the_record(repository):
    await _create(repository, "v1")
    assert await repository.delete_video("v1") is True
    assert await repository.get_video("v1") is None
    assert await repository.delete_video("v1") is False
