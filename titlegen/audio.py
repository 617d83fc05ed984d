"""File intake: decode an uploaded video or audio file into mono PCM samples."""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import numpy as np

logger = logging.getLogger(__name__)

SAMPLING_RATE = 16000


class AudioDecodeError(RuntimeError):
    """ffmpeg could not turn the upload into audio samples."""


class AudioSource(str, Enum):
    FILE = "FILE"


@dataclass
class AudioRecord:
    audio_id: str
    samples: np.ndarray
    url: str
    source: AudioSource
    mime_type: str
    filename: str
    data: bytes
    sampling_rate: int = SAMPLING_RATE

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sampling_rate

    def to_dict(self) -> dict:
        return {
            "audio_id": self.audio_id,
            "url": self.url,
            "source": self.source.value,
            "mime_type": self.mime_type,
            "filename": self.filename,
            "duration": round(self.duration, 3),
        }


async def decode_audio(data: bytes, sampling_rate: int = SAMPLING_RATE) -> np.ndarray:
    """Decode any container ffmpeg understands into float32 samples in [-1, 1)."""
    # Convert to PCM 16bit mono at the requested rate via ffmpeg
    proc = await asyncio.create_subprocess_exec(
        "ffmpeg",
        "-nostdin",
        "-i",
        "pipe:0",
        "-vn",
        "-f",
        "s16le",
        "-acodec",
        "pcm_s16le",
        "-ar",
        str(sampling_rate),
        "-ac",
        "1",
        "pipe:1",
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate(data)
    if proc.returncode != 0:
        message = (stderr or b"").decode("utf-8", errors="replace").strip().splitlines()
        raise AudioDecodeError(message[-1] if message else f"ffmpeg exited with {proc.returncode}")
    return np.frombuffer(stdout, dtype=np.int16).astype(np.float32) / 32768.0


class AudioStore:
    """Holds the current upload. A new upload replaces the previous one."""

    def __init__(self) -> None:
        self._records: Dict[str, AudioRecord] = {}

    def get(self, audio_id: str) -> Optional[AudioRecord]:
        return self._records.get(audio_id)

    def replace(
        self,
        data: bytes,
        samples: np.ndarray,
        *,
        filename: str,
        mime_type: str,
        sampling_rate: int = SAMPLING_RATE,
    ) -> AudioRecord:
        audio_id = uuid.uuid4().hex
        record = AudioRecord(
            audio_id=audio_id,
            samples=samples,
            url=f"/media/{audio_id}",
            source=AudioSource.FILE,
            mime_type=mime_type,
            filename=filename,
            data=data,
            sampling_rate=sampling_rate,
        )
        self._records = {audio_id: record}
        logger.info("Stored %s (%s, %.1fs of audio)", filename, mime_type, record.duration)
        return record
