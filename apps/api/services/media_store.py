"""Filesystem storage for uploaded videos, thumbnails and frame samples."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from config import settings

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024

VIDEO_EXT_BY_MIME = {
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/ogg": ".ogv",
    "video/quicktime": ".mov",
}


class UploadTooLarge(ValueError):
    """Raised when an upload stream exceeds the configured byte limit."""


def sanitize_filename(filename: str) -> str:
    base = os.path.basename(filename or "upload.mp4")
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe or "upload.mp4"


class MediaStore:
    """Lays out media under one root: videos/, thumbnails/, frames/<video_id>/."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.MEDIA_ROOT)

    @property
    def videos_dir(self) -> Path:
        return self.root / "videos"

    @property
    def thumbnails_dir(self) -> Path:
        return self.root / "thumbnails"

    @property
    def frames_root(self) -> Path:
        return self.root / "frames"

    def ensure_layout(self) -> None:
        for directory in (self.videos_dir, self.thumbnails_dir, self.frames_root):
            directory.mkdir(parents=True, exist_ok=True)

    def video_path(self, video_id: str, original_filename: str, mime_type: str) -> Path:
        suffix = Path(sanitize_filename(original_filename)).suffix.lower() or VIDEO_EXT_BY_MIME.get(mime_type, ".mp4")
        return self.videos_dir / f"{video_id}{suffix}"

    def thumbnail_path(self, video_id: str) -> Path:
        return self.thumbnails_dir / f"{video_id}.jpg"

    def frames_dir(self, video_id: str) -> Path:
        return self.frames_root / video_id

    async def save_upload(self, upload: UploadFile, destination: Path, max_bytes: int) -> int:
        """
        Stream an upload to disk in chunks. The partial file is removed when
        the stream exceeds `max_bytes` or the copy fails.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        total_size = 0
        try:
            with destination.open("wb") as out:
                while True:
                    chunk = await upload.read(UPLOAD_CHUNK_BYTES)
                    if not chunk:
                        break
                    total_size += len(chunk)
                    if total_size > max_bytes:
                        raise UploadTooLarge(f"Upload exceeds {max_bytes} bytes")
                    out.write(chunk)
        except BaseException:
            destination.unlink(missing_ok=True)
            raise
        finally:
            await upload.close()
        return total_size

    def clear_frames(self, video_id: str) -> None:
        frames_dir = self.frames_dir(video_id)
        if frames_dir.exists():
            shutil.rmtree(frames_dir)

    def delete_video_artifacts(
        self,
        video_id: str,
        file_path: Optional[str],
        thumbnail_path: Optional[str] = None,
    ) -> None:
        """Remove the backing file, the thumbnail and any leftover frames."""
        for path in (file_path, thumbnail_path):
            if not path:
                continue
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not delete media file %s: %s", path, exc)
        try:
            self.clear_frames(video_id)
        except OSError as exc:
            logger.warning("Could not delete frame samples for %s: %s", video_id, exc)
