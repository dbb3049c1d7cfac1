"""Video metadata persistence with named, field-scoped partial updates."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.video import Video


class VideoRepository:
    """
    Every mutation is one UPDATE touching only the named columns, so a
    duration write racing a progress write cannot clobber it.
    """

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker

    @property
    def session_maker(self) -> async_sessionmaker:
        if self._session_maker is None:
            from database import async_session_maker

            self._session_maker = async_session_maker
        return self._session_maker

    async def create_video(self, **fields: Any) -> Video:
        async with self.session_maker() as db:
            video = Video(**fields)
            db.add(video)
            await db.commit()
            await db.refresh(video)
            return video

    async def get_video(self, video_id: str, tenant_id: Optional[str] = None) -> Optional[Video]:
        """Fetch a video; with `tenant_id` the lookup is scoped to that tenant."""
        async with self.session_maker() as db:
            return await fetch_video(db, video_id, tenant_id)

    async def list_videos(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[Video]:
        async with self.session_maker() as db:
            result = await db.execute(video_list_query(tenant_id, status, search))
            return list(result.scalars().all())

    async def delete_video(self, video_id: str) -> bool:
        async with self.session_maker() as db:
            result = await db.execute(delete(Video).where(Video.id == video_id))
            await db.commit()
            return bool(result.rowcount)

    async def _update(self, video_id: str, *conditions: Any, **values: Any) -> bool:
        async with self.session_maker() as db:
            result = await db.execute(
                update(Video)
                .where(Video.id == video_id, *conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return bool(result.rowcount)

    async def mark_processing(self, video_id: str) -> bool:
        """Start of a run: status=processing, progress reset to 0."""
        return await self._update(video_id, status="processing", processing_progress=0, flag_reason=None)

    async def set_progress(self, video_id: str, progress: int) -> bool:
        """Move progress forward; a lower value than the stored one is ignored."""
        progress = max(0, min(int(progress), 100))
        return await self._update(
            video_id,
            Video.processing_progress <= progress,
            processing_progress=progress,
        )

    async def set_status(
        self,
        video_id: str,
        status: str,
        flag_reason: Optional[str] = None,
        progress: Optional[int] = None,
    ) -> bool:
        values: Dict[str, Any] = {"status": status, "flag_reason": flag_reason}
        if progress is not None:
            values["processing_progress"] = max(0, min(int(progress), 100))
        return await self._update(video_id, **values)

    async def set_duration(self, video_id: str, duration_seconds: float) -> bool:
        return await self._update(video_id, duration_seconds=float(duration_seconds))

    async def set_thumbnail(self, video_id: str, thumbnail_path: str) -> bool:
        return await self._update(video_id, thumbnail_path=thumbnail_path)

    async def set_analysis_result(self, video_id: str, analysis_results: Dict[str, Any]) -> bool:
        return await self._update(video_id, analysis_results=analysis_results)

    async def mark_stalled_failed(self, max_age_minutes: int) -> int:
        """Flip `processing` rows untouched for `max_age_minutes` to `failed`."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
        async with self.session_maker() as db:
            result = await db.execute(
                update(Video)
                .where(Video.status == "processing", Video.updated_at < cutoff)
                .values(status="failed", flag_reason="Processing was interrupted. Start the analysis again.")
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return int(result.rowcount or 0)


async def fetch_video(db: AsyncSession, video_id: str, tenant_id: Optional[str] = None) -> Optional[Video]:
    query = select(Video).where(Video.id == video_id)
    if tenant_id is not None:
        query = query.where(Video.tenant_id == tenant_id)
    result = await db.execute(query)
    return result.scalar_one_or_none()


def video_list_query(tenant_id: str, status: Optional[str] = None, search: Optional[str] = None):
    query = select(Video).where(Video.tenant_id == tenant_id)
    if status and status != "all":
        query = query.where(Video.status == status)
    if search:
        query = query.where(Video.title.ilike(f"%{search}%"))
    return query.order_by(Video.created_at.desc())
