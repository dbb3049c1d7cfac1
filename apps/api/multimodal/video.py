import os
import logging
from typing import Optional

import ffmpeg
import numpy as np

from services.errors import DecodeError

logger = logging.getLogger(__name__)


def _ffmpeg_error_text(error: ffmpeg.Error) -> str:
    return error.stderr.decode(errors="replace").strip() if error.stderr else str(error)


def probe_duration(video_path: str) -> Optional[float]:
    """
    Probe container metadata and return duration in seconds.
    Returns None when the container carries no usable duration.
    """
    try:
        probe = ffmpeg.probe(video_path)
    except ffmpeg.Error as e:
        logger.warning(f"Could not probe video duration for {video_path}: {_ffmpeg_error_text(e)}")
        return None

    fmt = probe.get("format", {})
    try:
        duration = float(fmt.get("duration", 0.0) or 0.0)
    except (TypeError, ValueError):
        duration = 0.0
    if duration <= 0:
        for stream in probe.get("streams", []):
            if stream.get("codec_type") != "video":
                continue
            try:
                duration = float(stream.get("duration", 0.0) or 0.0)
            except (TypeError, ValueError):
                continue
            if duration > 0:
                break
    return duration if duration > 0 else None


def sample_timestamps(duration: float, count: int) -> list[float]:
    """Evenly spaced timestamps strictly inside (0, duration)."""
    return [duration * (i + 1) / (count + 1) for i in range(count)]


def extract_frames(
    video_path: str,
    count: int,
    output_dir: str,
    width: int = 640,
    height: int = 480,
) -> list[str]:
    """
    Extract `count` stills at evenly spaced timestamps across the video.
    Returns paths to the extracted JPEG frames in timestamp order.
    """
    duration = probe_duration(video_path)
    if duration is None:
        raise DecodeError(f"Could not determine duration of {video_path}")

    os.makedirs(output_dir, exist_ok=True)

    frames = []
    for index, timestamp in enumerate(sample_timestamps(duration, count), start=1):
        frame_path = os.path.join(output_dir, f"frame-{index}.jpg")
        try:
            # ffmpeg -ss T -i video.mp4 -vf scale=640:480 -frames:v 1 frame-N.jpg
            (
                ffmpeg
                .input(video_path, ss=timestamp)
                .filter("scale", width, height)
                .output(frame_path, vframes=1)
                .overwrite_output()
                .run(quiet=True)
            )
        except ffmpeg.Error as e:
            raise DecodeError(f"Frame extraction failed at {timestamp:.2f}s: {_ffmpeg_error_text(e)}") from e
        if not os.path.exists(frame_path):
            raise DecodeError(f"No frame decoded at {timestamp:.2f}s")
        frames.append(frame_path)
    return frames


def extract_thumbnail(
    video_path: str,
    at_fraction: float,
    output_path: str,
    width: int = 320,
) -> str:
    """
    Grab one still at `at_fraction` of the duration, scaled to `width`
    with the aspect ratio preserved.
    """
    duration = probe_duration(video_path)
    if duration is None:
        raise DecodeError(f"Could not determine duration of {video_path}")

    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    timestamp = duration * min(max(at_fraction, 0.0), 1.0)
    try:
        (
            ffmpeg
            .input(video_path, ss=timestamp)
            .filter("scale", width, -2)
            .output(output_path, vframes=1)
            .overwrite_output()
            .run(quiet=True)
        )
    except ffmpeg.Error as e:
        raise DecodeError(f"Thumbnail extraction failed: {_ffmpeg_error_text(e)}") from e
    return output_path


def decode_frame_pixels(frame_path: str) -> np.ndarray:
    """
    Decode an image into an (N, 3) array of RGB pixel samples.
    """
    try:
        out, _ = (
            ffmpeg
            .input(frame_path)
            .output("pipe:", format="rawvideo", pix_fmt="rgb24")
            .run(capture_stdout=True, capture_stderr=True)
        )
    except ffmpeg.Error as e:
        raise DecodeError(f"Could not decode frame {frame_path}: {_ffmpeg_error_text(e)}") from e
    if not out:
        raise DecodeError(f"Frame {frame_path} decoded to no pixels")
    return np.frombuffer(out, dtype=np.uint8).reshape(-1, 3)
