from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from services.errors import AnalyzerError, DecodeError
from services.processing import frame_checkpoint
from services.sensitivity import (
    RED_DOMINANT_REASON,
    SensitivityAnalyzer,
    audio_screening_result,
    find_sensitive_words,
    red_pixel_ratio,
)


def _frame(red_pixels: int, total_pixels: int = 10000, red_value: int = 200) -> np.ndarray:
    pixels = np.zeros((total_pixels, 3), dtype=np.uint8)
    pixels[:red_pixels, 0] = red_value
    return pixels


def test_red_pixel_ratio_counts_only_values_strictly_above_threshold():
    pixels = np.zeros((4, 3), dtype=np.uint8)
    pixels[0, 0] = 181
    pixels[1, 0] = 180
    pixels[2, 0] = 255
    assert red_pixel_ratio(pixels, 180) == 0.5


def test_red_pixel_ratio_of_empty_frame_is_zero():
    assert red_pixel_ratio(np.zeros((0, 3), dtype=np.uint8), 180) == 0.0


@pytest.mark.asyncio
async def test_ratio_exactly_at_limit_is_safe():
    analyzer = SensitivityAnalyzer(red_threshold=180, ratio_limit=0.25, decoder=lambda _: _frame(2500))
    result = await analyzer.analyze(["frame-1.jpg"])
    assert result.is_safe is True
    assert result.reason is None
    assert result.frames[0].score == 0.25
    assert result.frames[0].flagged is False


@pytest.mark.asyncio
async def test_smallest_excess_over_limit_is_flagged():
    analyzer = SensitivityAnalyzer(red_threshold=180, ratio_limit=0.25, decoder=lambda _: _frame(2501))
    result = await analyzer.analyze(["frame-1.jpg"])
    assert result.is_safe is False
    assert result.reason == RED_DOMINANT_REASON
    assert result.frames[0].score == pytest.approx(0.2501)


@pytest.mark.asyncio
async def test_analysis_stops_at_first_red_dominant_frame():
    frames = [f"frame-{i}.jpg" for i in range(1, 6)]
    pixels_by_frame = {
        "frame-1.jpg": _frame(100),
        "frame-2.jpg": _frame(2000),
        "frame-3.jpg": _frame(9000),
        "frame-4.jpg": _frame(9000),
        "frame-5.jpg": _frame(0),
    }
    decode = MagicMock(side_effect=lambda path: pixels_by_frame[path])
    progress_calls = []

    async def on_frame(index, total):
        progress_calls.append((index, total))

    with patch("services.sensitivity.decode_frame_pixels", decode):
        analyzer = SensitivityAnalyzer(red_threshold=180, ratio_limit=0.25)
        result = await analyzer.analyze(frames, timestamps=[1.0, 2.0, 3.0, 4.0, 5.0], on_frame=on_frame)

    assert result.is_safe is False
    assert result.reason == RED_DOMINANT_REASON
    assert decode.call_count == 3
    assert [call.args[0] for call in decode.call_args_list] == frames[:3]
    assert progress_calls == [(0, 5), (1, 5), (2, 5)]
    assert [f.flagged for f in result.frames] == [False, False, True]
    assert result.frames[2].timestamp == 3.0
    assert result.score == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_all_frames_below_limit_are_safe():
    analyzer = SensitivityAnalyzer(red_threshold=180, ratio_limit=0.25, decoder=lambda _: _frame(1000))
    result = await analyzer.analyze([f"frame-{i}.jpg" for i in range(5)])
    assert result.is_safe is True
    assert len(result.frames) == 5
    assert result.score == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_unreadable_frame_raises_analyzer_error():
    def broken_decoder(path):
        raise DecodeError(f"cannot decode {path}")

    analyzer = SensitivityAnalyzer(decoder=broken_decoder)
    with pytest.raises(AnalyzerError):
        await analyzer.analyze(["frame-1.jpg"])


def test_frame_checkpoints_split_the_analysis_band_evenly():
    assert [frame_checkpoint(i, 5) for i in range(5)] == [42, 54, 66, 78, 90]
    assert frame_checkpoint(0, 1) == 90
    assert frame_checkpoint(9, 5) == 90


def test_sensitive_words_match_whole_words_only():
    transcript = "The Gunner grabbed the gun. No blood was spilled, no drugs."
    assert find_sensitive_words(transcript, ["gun", "blood", "kill", "Drugs"]) == ["gun", "blood", "drugs"]


def test_audio_screening_result_shape():
    audio = audio_screening_result("quiet walk in the park", ["gun", "kill"])
    assert audio == {"transcription": "quiet walk in the park", "sensitiveWords": [], "score": 0.0}
