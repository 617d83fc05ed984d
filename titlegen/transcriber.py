"""Timed transcript chunks produced by the speech recognition model."""

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple


@dataclass
class TranscriptChunk:
    text: str
    timestamp: Tuple[Optional[float], Optional[float]] = (None, None)

    def to_dict(self) -> dict:
        return {"text": self.text, "timestamp": list(self.timestamp)}


@dataclass
class Transcript:
    chunks: List[TranscriptChunk] = field(default_factory=list)

    @property
    def text(self) -> str:
        """All chunk texts joined in order, without surrounding whitespace."""
        return "".join(chunk.text for chunk in self.chunks).strip()

    def to_dict(self) -> dict:
        return {"text": self.text, "chunks": [chunk.to_dict() for chunk in self.chunks]}

    @classmethod
    def from_pipeline_output(cls, output: Any) -> "Transcript":
        """Build a transcript from an automatic-speech-recognition pipeline result.

        The pipeline returns ``{"text": ..., "chunks": [...]}`` when timestamps
        are requested and only ``{"text": ...}`` otherwise.
        """
        raw_chunks: Iterable[dict] = output.get("chunks") or []
        chunks = []
        for raw in raw_chunks:
            start, end = raw.get("timestamp") or (None, None)
            chunks.append(TranscriptChunk(text=raw.get("text", ""), timestamp=(start, end)))
        if not chunks and output.get("text"):
            chunks.append(TranscriptChunk(text=output["text"]))
        return cls(chunks=chunks)
