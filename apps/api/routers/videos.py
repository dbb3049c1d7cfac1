"""
Video router: upload, tenant-scoped reads, byte-range streaming, deletion
and the explicit analysis trigger.
"""

import logging
import uuid
from pathlib import Path
from typing import Iterator, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.user import User
from models.video import Video
from routers.auth_scope import AuthContext, ensure_tenant_scope, get_auth_context, require_role
from routers.deps import get_broadcaster, get_media_store, get_orchestrator
from routers.rate_limit import rate_limit
from services.events import UPLOAD_COMPLETE, EventBroadcaster
from services.media_store import MediaStore, UploadTooLarge, sanitize_filename
from services.processing import ProcessingOrchestrator, StartOutcome
from services.video_repository import fetch_video, video_list_query

router = APIRouter()
logger = logging.getLogger(__name__)

STREAM_CHUNK_BYTES = 1024 * 1024


class VideoResponse(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    filename: str
    mime_type: Optional[str] = None
    file_size_bytes: Optional[int] = None
    duration_seconds: Optional[float] = None
    thumbnail_path: Optional[str] = None
    status: str
    processing_progress: int
    flag_reason: Optional[str] = None
    analysis_results: Optional[dict] = None
    views: int
    uploader_id: str
    uploader_name: Optional[str] = None
    tenant_id: str
    created_at: Optional[str] = None


class VideoListResponse(BaseModel):
    videos: List[VideoResponse]


class UploadVideoResponse(BaseModel):
    message: str
    video: VideoResponse


class AnalysisStartResponse(BaseModel):
    status: str
    video_id: str
    message: str


def _serialize_video(video: Video, uploader_name: Optional[str] = None) -> VideoResponse:
    return VideoResponse(
        id=video.id,
        title=video.title,
        description=video.description,
        filename=video.filename,
        mime_type=video.mime_type,
        file_size_bytes=video.file_size_bytes,
        duration_seconds=video.duration_seconds,
        thumbnail_path=video.thumbnail_path,
        status=video.status,
        processing_progress=int(video.processing_progress or 0),
        flag_reason=video.flag_reason,
        analysis_results=video.analysis_results,
        views=int(video.views or 0),
        uploader_id=video.uploader_id,
        uploader_name=uploader_name,
        tenant_id=video.tenant_id,
        created_at=video.created_at.isoformat() if video.created_at else None,
    )


async def _ensure_user(db: AsyncSession, auth: AuthContext) -> User:
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if user:
        return user
    user = User(
        id=auth.user_id,
        email=auth.email or f"{auth.user_id}@local.invalid",
        role=auth.role,
        tenant_id=auth.tenant_id,
    )
    db.add(user)
    await db.flush()
    return user


async def _uploader_names(db: AsyncSession, uploader_ids: set) -> dict:
    if not uploader_ids:
        return {}
    result = await db.execute(select(User.id, User.name).where(User.id.in_(uploader_ids)))
    return {row.id: row.name for row in result}


async def _get_scoped_video(db: AsyncSession, video_id: str, auth: AuthContext) -> Video:
    video = await fetch_video(db, video_id, auth.tenant_id)
    if not video:
        raise HTTPException(status_code=404, detail="Video not found")
    return video


async def _get_mutable_video(db: AsyncSession, video_id: str, auth: AuthContext) -> Video:
    """Unscoped lookup so a cross-tenant mutation answers 403 rather than 404."""
    video = await fetch_video(db, video_id)
    if not video:
        raise HTTPException(status_code=404, detail="Video not found")
    ensure_tenant_scope(auth, video.tenant_id)
    return video


def parse_range_header(range_header: str, file_size: int) -> tuple[int, int]:
    """
    Parse `bytes=<start>-<end?>` into an inclusive (start, end) span.
    A missing end means end of file; suffix ranges (`bytes=-N`) serve the last N bytes.
    """
    unit, _, byte_range = range_header.strip().partition("=")
    if unit.strip().lower() != "bytes" or not byte_range or "," in byte_range:
        raise ValueError(f"Unsupported range: {range_header}")
    start_s, sep, end_s = byte_range.strip().partition("-")
    if not sep:
        raise ValueError(f"Malformed range: {range_header}")
    if not start_s:
        suffix = int(end_s)
        if suffix <= 0:
            raise ValueError(f"Malformed range: {range_header}")
        return max(file_size - suffix, 0), file_size - 1
    start = int(start_s)
    end = int(end_s) if end_s else file_size - 1
    end = min(end, file_size - 1)
    if start < 0 or start > end:
        raise ValueError(f"Unsatisfiable range: {range_header}")
    return start, end


def _file_chunks(file_path: Path, start: int, end: int) -> Iterator[bytes]:
    with open(file_path, "rb") as f:
        f.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = f.read(min(STREAM_CHUNK_BYTES, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


@router.post("/upload", response_model=UploadVideoResponse, status_code=201)
async def upload_video(
    video: UploadFile = File(...),
    title: str = Form(""),
    description: Optional[str] = Form(None),
    _rate_limit: None = Depends(rate_limit("video_upload", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(require_role("editor", "admin")),
    db: AsyncSession = Depends(get_db),
    media_store: MediaStore = Depends(get_media_store),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
):
    """Store an uploaded video, create its record and start processing."""
    content_type = (video.content_type or "").lower()
    if content_type not in settings.ALLOWED_VIDEO_MIME_TYPES:
        await video.close()
        raise HTTPException(
            status_code=422,
            detail="Invalid file type. Only MP4, WebM, OGG, and MOV files are allowed.",
        )
    title = (title or "").strip()
    if not title:
        await video.close()
        raise HTTPException(status_code=422, detail="Title is required")

    user = await _ensure_user(db, auth)

    video_id = str(uuid.uuid4())
    original_filename = sanitize_filename(video.filename or "upload.mp4")
    destination = media_store.video_path(video_id, original_filename, content_type)
    try:
        total_size = await media_store.save_upload(video, destination, settings.MAX_VIDEO_UPLOAD_BYTES)
    except UploadTooLarge as exc:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Max upload size is {settings.MAX_VIDEO_UPLOAD_BYTES // (1024 * 1024)}MB.",
        ) from exc

    record = Video(
        id=video_id,
        title=title,
        description=description or "",
        filename=original_filename,
        file_path=str(destination),
        mime_type=content_type,
        file_size_bytes=total_size,
        status="uploaded",
        processing_progress=0,
        uploader_id=user.id,
        tenant_id=auth.tenant_id,
    )
    db.add(record)
    try:
        await db.commit()
    except Exception:
        destination.unlink(missing_ok=True)
        raise
    await db.refresh(record)

    broadcaster.publish_global(
        UPLOAD_COMPLETE, {"videoId": video_id, "status": "uploaded"}, tenant_id=auth.tenant_id
    )
    orchestrator.start_processing(video_id)
    logger.info("Video %s uploaded by %s (%s bytes)", video_id, user.id, total_size)

    return UploadVideoResponse(
        message="Video uploaded successfully",
        video=_serialize_video(record, user.name),
    )


@router.get("/", response_model=VideoListResponse)
async def list_videos(
    status: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """List videos of the caller's tenant, newest first."""
    result = await db.execute(video_list_query(auth.tenant_id, status, search))
    videos = result.scalars().all()
    names = await _uploader_names(db, {v.uploader_id for v in videos})
    return VideoListResponse(videos=[_serialize_video(v, names.get(v.uploader_id)) for v in videos])


@router.get("/{video_id}", response_model=VideoResponse)
async def get_video(
    video_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get one video of the caller's tenant."""
    video = await _get_scoped_video(db, video_id, auth)
    names = await _uploader_names(db, {video.uploader_id})
    return _serialize_video(video, names.get(video.uploader_id))


@router.get("/{video_id}/stream")
async def stream_video(
    video_id: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Serve the stored media, honouring a single `Range: bytes=` header."""
    video = await _get_scoped_video(db, video_id, auth)
    file_path = Path(video.file_path)
    if not file_path.is_file():
        raise HTTPException(status_code=404, detail="Video file not found on server")

    file_size = file_path.stat().st_size
    media_type = video.mime_type or "video/mp4"
    range_header = request.headers.get("range")

    if range_header:
        try:
            start, end = parse_range_header(range_header, file_size)
        except ValueError as exc:
            raise HTTPException(
                status_code=416,
                detail="Requested range not satisfiable",
                headers={"Content-Range": f"bytes */{file_size}"},
            ) from exc
        headers = {
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
        }
        return StreamingResponse(
            _file_chunks(file_path, start, end), status_code=206, headers=headers, media_type=media_type
        )

    headers = {
        "Accept-Ranges": "bytes",
        "Content-Length": str(file_size),
    }
    return StreamingResponse(
        _file_chunks(file_path, 0, file_size - 1), status_code=200, headers=headers, media_type=media_type
    )


@router.patch("/{video_id}/view")
async def increment_views(
    video_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Bump the view counter of a tenant video."""
    await _get_scoped_video(db, video_id, auth)
    await db.execute(
        update(Video)
        .where(Video.id == video_id, Video.tenant_id == auth.tenant_id)
        .values(views=Video.views + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return {"message": "View count updated"}


@router.delete("/{video_id}")
async def delete_video(
    video_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    media_store: MediaStore = Depends(get_media_store),
):
    """Delete a video with its file, thumbnail and frame samples. Admins or the uploader only."""
    video = await _get_mutable_video(db, video_id, auth)
    if auth.role != "admin" and video.uploader_id != auth.user_id:
        raise HTTPException(status_code=403, detail="Insufficient permissions")

    file_path, thumbnail_path = video.file_path, video.thumbnail_path
    await db.delete(video)
    await db.commit()
    media_store.delete_video_artifacts(video_id, file_path, thumbnail_path)
    logger.info("Video %s deleted by %s", video_id, auth.user_id)
    return {"message": "Video deleted successfully"}


@router.post("/{video_id}/analysis/start", response_model=AnalysisStartResponse)
async def start_analysis(
    video_id: str,
    auth: AuthContext = Depends(require_role("editor", "admin")),
    db: AsyncSession = Depends(get_db),
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
):
    """Start sensitivity analysis; a second call while one runs is suppressed."""
    await _get_mutable_video(db, video_id, auth)
    outcome = orchestrator.start_processing(video_id)
    if outcome is StartOutcome.ALREADY_RUNNING:
        return AnalysisStartResponse(
            status="already_running",
            video_id=video_id,
            message=f"Analysis already running for video {video_id}",
        )
    return AnalysisStartResponse(status="started", video_id=video_id, message="Sensitivity analysis started")
