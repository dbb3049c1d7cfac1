import logging
from typing import Dict

import ffmpeg
from openai import OpenAI

from services.errors import DecodeError

logger = logging.getLogger(__name__)


def extract_audio(video_path: str, output_path: str) -> str:
    """
    Extract the audio track of a video to MP3.
    Returns path to audio file.
    """
    try:
        # ffmpeg -i video.mp4 -vn -b:a 32k audio.mp3
        (
            ffmpeg
            .input(video_path)
            .output(output_path, format="mp3", audio_bitrate="32k", vn=None)  # Low bitrate for API size limit
            .overwrite_output()
            .run(quiet=True)
        )
        return output_path
    except ffmpeg.Error as e:
        detail = e.stderr.decode(errors="replace") if e.stderr else str(e)
        logger.error(f"Error extracting audio: {detail}")
        raise DecodeError(f"Audio extraction failed: {detail}") from e


def transcribe_audio(audio_path: str, api_key: str) -> Dict:
    """
    Transcribe audio using OpenAI Whisper API.
    Returns {"text": ...}.
    """
    client = OpenAI(api_key=api_key)
    try:
        with open(audio_path, "rb") as audio_file:
            transcript = client.audio.transcriptions.create(
                model="whisper-1",
                file=audio_file,
            )
    except Exception as e:
        logger.error(f"Error transcribing audio: {e}")
        raise
    return {"text": str(getattr(transcript, "text", "") or "").strip()}
