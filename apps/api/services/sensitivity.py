"""Pixel-level sensitivity heuristic over sampled frames."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import numpy as np

from config import settings
from multimodal.video import decode_frame_pixels
from services.errors import AnalyzerError

logger = logging.getLogger(__name__)

RED_DOMINANT_REASON = "Red-dominant frames detected"

FrameCallback = Callable[[int, int], Awaitable[None]]


@dataclass
class FrameScore:
    index: int
    timestamp: Optional[float]
    score: float
    flagged: bool
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "timestamp": self.timestamp,
            "score": round(self.score, 6),
            "flagged": self.flagged,
            "reason": self.reason,
        }


@dataclass
class SensitivityResult:
    is_safe: bool
    reason: Optional[str] = None
    frames: List[FrameScore] = field(default_factory=list)

    @property
    def score(self) -> float:
        return max((frame.score for frame in self.frames), default=0.0)


def red_pixel_ratio(pixels: np.ndarray, threshold: int) -> float:
    """Fraction of pixels whose red channel is strictly above `threshold`."""
    samples = np.asarray(pixels).reshape(-1, 3)
    total = samples.shape[0]
    if total == 0:
        return 0.0
    red_pixels = int(np.count_nonzero(samples[:, 0] > threshold))
    return red_pixels / total


class SensitivityAnalyzer:
    """
    Flags a video as soon as one sampled frame is red-dominant.

    Frames are evaluated in order and evaluation stops at the first frame
    whose red ratio is strictly greater than `ratio_limit`.
    """

    def __init__(
        self,
        red_threshold: Optional[int] = None,
        ratio_limit: Optional[float] = None,
        decoder: Optional[Callable[[str], np.ndarray]] = None,
    ):
        self.red_threshold = settings.RED_CHANNEL_THRESHOLD if red_threshold is None else red_threshold
        self.ratio_limit = settings.RED_RATIO_LIMIT if ratio_limit is None else ratio_limit
        self._decoder = decoder

    def _decode(self, frame_path: str) -> np.ndarray:
        decoder = self._decoder or decode_frame_pixels
        try:
            return decoder(frame_path)
        except Exception as exc:
            raise AnalyzerError(f"Could not read sampled frame {frame_path}: {exc}") from exc

    def score_frame(self, frame_path: str) -> float:
        return red_pixel_ratio(self._decode(frame_path), self.red_threshold)

    async def analyze(
        self,
        frame_paths: Sequence[str],
        timestamps: Optional[Sequence[float]] = None,
        on_frame: Optional[FrameCallback] = None,
    ) -> SensitivityResult:
        """Score frames in order, stopping at the first red-dominant one."""
        total = len(frame_paths)
        scores: List[FrameScore] = []
        for index, frame_path in enumerate(frame_paths):
            ratio = await asyncio.to_thread(self.score_frame, frame_path)
            timestamp = timestamps[index] if timestamps and index < len(timestamps) else None
            flagged = ratio > self.ratio_limit
            scores.append(
                FrameScore(
                    index=index,
                    timestamp=timestamp,
                    score=ratio,
                    flagged=flagged,
                    reason=RED_DOMINANT_REASON if flagged else None,
                )
            )
            if on_frame is not None:
                await on_frame(index, total)
            if flagged:
                logger.info("Frame %s of %s is red-dominant (ratio=%.4f)", index + 1, total, ratio)
                return SensitivityResult(is_safe=False, reason=RED_DOMINANT_REASON, frames=scores)

        return SensitivityResult(is_safe=True, frames=scores)


def find_sensitive_words(transcript: str, words: Sequence[str]) -> List[str]:
    """Return configured words that occur as whole words in the transcript, in config order."""
    lower_text = (transcript or "").lower()
    found = []
    for word in words:
        needle = str(word or "").strip().lower()
        if not needle or needle in found:
            continue
        if re.search(rf"\b{re.escape(needle)}\b", lower_text):
            found.append(needle)
    return found


def audio_screening_result(transcript: str, words: Sequence[str]) -> Dict[str, Any]:
    """Build the analysisResults.audio sub-record for a transcript."""
    sensitive = find_sensitive_words(transcript, words)
    vocabulary = [w for w in words if str(w or "").strip()]
    score = len(sensitive) / len(vocabulary) if vocabulary else 0.0
    return {
        "transcription": transcript,
        "sensitiveWords": sensitive,
        "score": round(score, 4),
    }
