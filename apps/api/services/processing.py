"""
Per-video processing pipeline.

A run samples frames, screens them with the sensitivity heuristic, persists
checkpoints through the repository and publishes them to the video's room.
At most one run exists per video id at any time.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config import frame_dimensions, settings
from multimodal.audio import extract_audio, transcribe_audio
from multimodal.video import extract_frames, extract_thumbnail, probe_duration, sample_timestamps
from services.errors import ProcessingTimeout, SourceMissing
from services.events import (
    ANALYSIS_ALREADY_RUNNING,
    ANALYSIS_ERROR,
    ANALYSIS_STARTED,
    PROCESSING_COMPLETE,
    PROCESSING_UPDATE,
    EventBroadcaster,
    Subscriber,
)
from services.media_store import MediaStore
from services.sensitivity import SensitivityAnalyzer, SensitivityResult, audio_screening_result
from services.video_repository import VideoRepository

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 0
PROGRESS_VALIDATED = 10
PROGRESS_FRAMES_EXTRACTED = 30
PROGRESS_FRAMES_DONE = 90
PROGRESS_AUDIO = 95
PROGRESS_FINALIZING = 98
PROGRESS_COMPLETE = 100


class StartOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    ALREADY_RUNNING = "already_running"


@dataclass
class ProcessingRun:
    video_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    terminal: bool = False
    task: Optional[asyncio.Task] = None
    # Threads keep running after their awaiting coroutine is cancelled.
    workers: List[asyncio.Future] = field(default_factory=list)


def frame_checkpoint(frame_index: int, frame_count: int) -> int:
    """Progress after analysing frame `frame_index` (0-based), inside the 30-90 band."""
    band = PROGRESS_FRAMES_DONE - PROGRESS_FRAMES_EXTRACTED
    value = PROGRESS_FRAMES_EXTRACTED + round(band * (frame_index + 1) / max(frame_count, 1))
    return min(value, PROGRESS_FRAMES_DONE)


class ProcessingOrchestrator:
    def __init__(
        self,
        repository: Optional[VideoRepository] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        media_store: Optional[MediaStore] = None,
        analyzer: Optional[SensitivityAnalyzer] = None,
        frame_count: Optional[int] = None,
    ):
        self.repository = repository or VideoRepository()
        self.broadcaster = broadcaster or EventBroadcaster(queue_size=settings.EVENT_QUEUE_SIZE)
        self.media_store = media_store or MediaStore()
        self.analyzer = analyzer or SensitivityAnalyzer()
        self.frame_count = frame_count or settings.FRAME_SAMPLE_COUNT
        self._runs: Dict[str, ProcessingRun] = {}
        self._runs_lock = threading.Lock()

    # Run registry

    def _register(self, video_id: str) -> Optional[ProcessingRun]:
        """Insert-if-absent; returns None when a run already exists."""
        with self._runs_lock:
            if video_id in self._runs:
                return None
            run = ProcessingRun(video_id=video_id)
            self._runs[video_id] = run
            return run

    def _deregister(self, run: ProcessingRun) -> None:
        with self._runs_lock:
            if self._runs.get(run.video_id) is run:
                del self._runs[run.video_id]

    def is_running(self, video_id: str) -> bool:
        with self._runs_lock:
            return video_id in self._runs

    def active_run(self, video_id: str) -> Optional[ProcessingRun]:
        with self._runs_lock:
            return self._runs.get(video_id)

    def active_video_ids(self) -> List[str]:
        with self._runs_lock:
            return list(self._runs)

    # Public entry points

    def start_processing(self, video_id: str, requester: Optional[Subscriber] = None) -> StartOutcome:
        """
        Register a run and schedule the pipeline without waiting for it.
        Must be called from inside a running event loop.
        """
        run = self._register(video_id)
        if run is None:
            message = f"Analysis already running for video {video_id}"
            payload = {"videoId": video_id, "message": message}
            if requester is not None:
                self.broadcaster.send(requester, ANALYSIS_ALREADY_RUNNING, payload)
            self.broadcaster.publish(video_id, ANALYSIS_ALREADY_RUNNING, payload, exclude=requester)
            logger.info(message)
            return StartOutcome.ALREADY_RUNNING

        try:
            run.task = asyncio.create_task(self._run(run), name=f"process-video:{video_id}")
        except BaseException:
            self._deregister(run)
            raise
        return StartOutcome.ACCEPTED

    async def wait_idle(self) -> None:
        """Wait for every run registered right now to finish."""
        with self._runs_lock:
            tasks = [run.task for run in self._runs.values() if run.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight runs. Their videos are left as last persisted."""
        with self._runs_lock:
            tasks = [run.task for run in self._runs.values() if run.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Pipeline

    async def _run(self, run: ProcessingRun) -> None:
        video_id = run.video_id
        try:
            timeout = int(settings.PROCESSING_TIMEOUT_SECONDS or 0)
            if timeout > 0:
                try:
                    await asyncio.wait_for(self._pipeline(video_id), timeout=timeout)
                except asyncio.TimeoutError as exc:
                    raise ProcessingTimeout(f"Processing exceeded {timeout}s") from exc
            else:
                await self._pipeline(video_id)
        except asyncio.CancelledError:
            logger.warning("Processing of video %s was cancelled", video_id)
            raise
        except Exception as exc:
            logger.exception("Processing of video %s failed: %s", video_id, exc)
            await self._handle_failure(video_id, exc)
        finally:
            try:
                await self._settle_workers(run)
            finally:
                self._cleanup_frames(video_id)
                run.terminal = True
                self._deregister(run)

    async def _offload(self, video_id: str, func, *args):
        """
        Run blocking media work in a thread. The thread is recorded on the run
        so cleanup can wait for it even when the awaiting coroutine is cancelled.
        """
        worker = asyncio.ensure_future(asyncio.to_thread(func, *args))
        run = self.active_run(video_id)
        if run is not None:
            run.workers.append(worker)
        return await asyncio.shield(worker)

    async def _settle_workers(self, run: ProcessingRun) -> None:
        pending = [worker for worker in run.workers if not worker.done()]
        if not pending:
            return
        logger.info("Waiting for %s media worker(s) of video %s to finish", len(pending), run.video_id)
        settled = asyncio.gather(*pending, return_exceptions=True)
        # Still clean up if this wait is itself cancelled.
        settled.add_done_callback(lambda _: self._cleanup_frames(run.video_id))
        await asyncio.shield(settled)

    async def _pipeline(self, video_id: str) -> None:
        video = await self.repository.get_video(video_id)
        if video is None:
            raise SourceMissing(f"Video record {video_id} not found")

        await self.repository.mark_processing(video_id)
        self.broadcaster.publish(video_id, ANALYSIS_STARTED, {"videoId": video_id, "message": "Sensitivity analysis started"})
        await self._checkpoint(video_id, PROGRESS_STARTED, "initializing")

        source_path = video.file_path
        self._require_source(source_path)
        await self._checkpoint(video_id, PROGRESS_VALIDATED, "validating")

        metadata_task = asyncio.create_task(self._persist_media_metadata(video_id, source_path))
        try:
            frames_dir = self.media_store.frames_dir(video_id)
            width, height = frame_dimensions()
            frame_paths = await self._offload(
                video_id, extract_frames, source_path, self.frame_count, str(frames_dir), width, height
            )
            logger.info("Extracted %s frames for video %s", len(frame_paths), video_id)
            await self._checkpoint(video_id, PROGRESS_FRAMES_EXTRACTED, "extracting-frames")

            duration = await metadata_task
            timestamps = sample_timestamps(duration, len(frame_paths)) if duration else None

            async def on_frame(index: int, total: int) -> None:
                await self._checkpoint(video_id, frame_checkpoint(index, total), "analyzing-content")

            self._require_source(source_path)
            result = await self.analyzer.analyze(frame_paths, timestamps=timestamps, on_frame=on_frame)
        finally:
            if not metadata_task.done():
                metadata_task.cancel()

        audio = None
        if result.is_safe and settings.ENABLE_AUDIO_SCREENING:
            audio = await self._screen_audio(video_id, source_path)
        await self._checkpoint(video_id, PROGRESS_AUDIO, "audio-transcription")

        await self.repository.set_analysis_result(video_id, self._analysis_results(result, audio))
        await self._checkpoint(video_id, PROGRESS_FINALIZING, "finalizing")

        status = "safe" if result.is_safe else "flagged"
        await self.repository.set_status(
            video_id,
            status,
            flag_reason=None if result.is_safe else result.reason,
            progress=PROGRESS_COMPLETE,
        )
        self.broadcaster.publish(
            video_id,
            PROCESSING_UPDATE,
            {"videoId": video_id, "progress": PROGRESS_COMPLETE, "status": status, "step": "complete"},
        )
        self.broadcaster.publish_global(
            PROCESSING_COMPLETE, {"videoId": video_id, "status": status}, tenant_id=video.tenant_id
        )
        logger.info("Video %s processing complete: %s", video_id, status)

    def _require_source(self, source_path: Optional[str]) -> None:
        if not source_path or not os.path.isfile(source_path):
            raise SourceMissing(f"Source file {source_path!r} is missing")

    async def _checkpoint(self, video_id: str, progress: int, step: str) -> None:
        await self.repository.set_progress(video_id, progress)
        self.broadcaster.publish(
            video_id,
            PROCESSING_UPDATE,
            {"videoId": video_id, "progress": progress, "status": "processing", "step": step},
        )

    async def _persist_media_metadata(self, video_id: str, source_path: str) -> Optional[float]:
        """
        Probe duration and cut a thumbnail; only touches those two fields.
        Best-effort: a failure here is logged and the run carries on without them.
        """
        duration = None
        try:
            duration = await self._offload(video_id, probe_duration, source_path)
            if duration is None:
                return None
            if await self.repository.set_duration(video_id, duration):
                await self._persist_thumbnail(video_id, source_path)
        except Exception as exc:
            logger.warning("Media metadata step failed for video %s: %s", video_id, exc)
        return duration

    async def _persist_thumbnail(self, video_id: str, source_path: str) -> None:
        # Cut into the frames dir first so an abandoned cut is swept with the frames.
        staged = self.media_store.frames_dir(video_id) / "thumbnail.jpg"
        try:
            await self._offload(
                video_id, extract_thumbnail, source_path, 0.5, str(staged), settings.THUMBNAIL_WIDTH
            )
        except Exception as exc:
            logger.warning("Thumbnail extraction failed for video %s: %s", video_id, exc)
            return

        thumbnail_path = self.media_store.thumbnail_path(video_id)
        thumbnail_path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(staged, thumbnail_path)
        try:
            stored = await self.repository.set_thumbnail(video_id, str(thumbnail_path))
        except BaseException:
            thumbnail_path.unlink(missing_ok=True)
            raise
        if not stored:
            thumbnail_path.unlink(missing_ok=True)
            logger.info("Video %s was deleted mid-run; discarded its thumbnail", video_id)

    async def _screen_audio(self, video_id: str, source_path: str) -> Optional[Dict[str, Any]]:
        if not settings.OPENAI_API_KEY:
            logger.warning("Audio screening enabled but OPENAI_API_KEY is not configured")
            return None
        audio_path = self.media_store.frames_dir(video_id) / "audio.mp3"
        try:
            await self._offload(video_id, extract_audio, source_path, str(audio_path))
            transcript = await self._offload(
                video_id, transcribe_audio, str(audio_path), settings.OPENAI_API_KEY
            )
        except Exception as exc:
            logger.warning("Audio screening skipped for video %s: %s", video_id, exc)
            return None
        return audio_screening_result(transcript.get("text", ""), settings.SENSITIVE_WORDS)

    def _analysis_results(self, result: SensitivityResult, audio: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "frames": [frame.as_dict() for frame in result.frames],
            "audio": audio,
            "overall": {
                "score": round(result.score, 6),
                "isSafe": result.is_safe,
                "flagReasons": [result.reason] if result.reason else [],
            },
        }

    async def _handle_failure(self, video_id: str, exc: Exception) -> None:
        if not settings.MARK_FAILED_ON_ERROR:
            return
        try:
            await self.repository.set_status(video_id, "failed", flag_reason=str(exc)[:500])
        except Exception:
            logger.exception("Could not mark video %s as failed", video_id)
        self.broadcaster.publish(video_id, ANALYSIS_ERROR, {"videoId": video_id, "error": str(exc) or "Unknown error"})

    def _cleanup_frames(self, video_id: str) -> None:
        try:
            self.media_store.clear_frames(video_id)
        except OSError as exc:
            logger.error("Error cleaning up frames for video %s: %s", video_id, exc)

