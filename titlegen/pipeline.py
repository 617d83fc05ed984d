"""End-to-end processing of one upload: transcript, title, description, thumbnail."""

import asyncio
import logging
from dataclasses import dataclass

from .audio import AudioRecord
from .config import Settings
from .generator import ContentGenerator
from .models import InferenceBackend
from .publisher import QueuePublisher

logger = logging.getLogger(__name__)


@dataclass
class ProcessedVideo:
    video_id: str
    transcript: str
    title: str
    description: str
    thumbnail_url: str

    def to_dict(self) -> dict:
        return {
            "video_id": self.video_id,
            "transcript": self.transcript,
            "title": self.title,
            "description": self.description,
            "thumbnail_url": self.thumbnail_url,
        }


class VideoProcessor:
    def __init__(
        self,
        backend: InferenceBackend,
        settings: Settings,
        publisher: QueuePublisher,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.generator = ContentGenerator(backend, settings)
        self.publisher = publisher

    async def process(self, record: AudioRecord) -> ProcessedVideo:
        logger.info("Processing %s", record.filename)
        transcript = await asyncio.to_thread(
            self.backend.transcribe, record.samples, record.sampling_rate
        )
        content = await asyncio.to_thread(self.generator.generate, transcript.text)

        # Thumbnail synthesis is not implemented, a placeholder image is returned
        result = ProcessedVideo(
            video_id=record.filename,
            transcript=transcript.text,
            title=content.title,
            description=content.description,
            thumbnail_url=self.settings.thumbnail_url,
        )
        await self.publisher.push(
            self.settings.queue_name,
            {"videoId": result.video_id, "title": result.title, "description": result.description},
        )
        return result
