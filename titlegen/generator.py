"""Draft a video title and description from a transcript."""

import logging
from dataclasses import dataclass
from typing import List

from .config import Settings
from .models import InferenceBackend
from .prompts import description_messages, title_messages
from .protocol import Message

logger = logging.getLogger(__name__)

TITLE_ERROR = "Error generating title"
DESCRIPTION_ERROR = "Error generating description"


@dataclass
class GeneratedContent:
    title: str
    description: str

    def to_dict(self) -> dict:
        return {"title": self.title, "description": self.description}


class ContentGenerator:
    """Runs the title and description prompts through the chat model.

    Each prompt is generated independently: a failure in one is replaced by a
    placeholder string and does not affect the other.
    """

    def __init__(self, backend: InferenceBackend, settings: Settings) -> None:
        self.backend = backend
        self.settings = settings

    def generate(self, transcript: str) -> GeneratedContent:
        """Blocking; call from a thread when running inside the event loop."""
        if not transcript.strip():
            return GeneratedContent(title="", description="")
        limit = self.settings.prompt_char_limit
        title = self._complete(
            title_messages(transcript, limit), self.settings.title_max_tokens, TITLE_ERROR
        )
        description = self._complete(
            description_messages(transcript, limit),
            self.settings.description_max_tokens,
            DESCRIPTION_ERROR,
        )
        return GeneratedContent(title=title, description=description)

    def _complete(self, messages: List[Message], max_new_tokens: int, fallback: str) -> str:
        try:
            text = self.backend.complete_chat(messages, max_new_tokens=max_new_tokens).strip()
        except Exception:
            logger.exception("Error generating content, using %r", fallback)
            return fallback
        return text or fallback
