"""Application settings read from the environment (and an optional .env file)."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# .env lives in the project root, next to the titlegen package
load_dotenv(Path(__file__).parent.parent / ".env")

PLACEHOLDER_THUMBNAIL_URL = "https://via.placeholder.com/300x200"

# Whisper checkpoints offered to the UI, with their approximate download size in MB
ASR_MODELS = {
    "openai/whisper-tiny": 151,
    "openai/whisper-base": 290,
    "openai/whisper-small": 967,
    "openai/whisper-large-v3-turbo": 1620,
    # English-only
    "distil-whisper/distil-small.en": 664,
}


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


@dataclass
class Settings:
    """Runtime configuration for the service."""

    asr_model: str = "openai/whisper-small"
    llm_model: str = "Qwen/Qwen1.5-0.5B-Chat"
    device: Optional[str] = None
    require_gpu: bool = False
    sampling_rate: int = 16000

    # Prompting
    prompt_char_limit: int = 1000
    title_max_tokens: int = 50
    description_max_tokens: int = 150
    chat_max_new_tokens: int = 512

    thumbnail_url: str = PLACEHOLDER_THUMBNAIL_URL

    # External queue, only used when both url and token are set
    queue_url: Optional[str] = None
    queue_token: Optional[str] = None
    queue_name: str = "video-processed"

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            asr_model=os.getenv("ASR_MODEL", defaults.asr_model),
            llm_model=os.getenv("LLM_MODEL", defaults.llm_model),
            device=os.getenv("DEVICE") or None,
            require_gpu=_env_bool("REQUIRE_GPU", defaults.require_gpu),
            sampling_rate=_env_int("SAMPLING_RATE", defaults.sampling_rate),
            prompt_char_limit=_env_int("PROMPT_CHAR_LIMIT", defaults.prompt_char_limit),
            title_max_tokens=_env_int("TITLE_MAX_TOKENS", defaults.title_max_tokens),
            description_max_tokens=_env_int("DESCRIPTION_MAX_TOKENS", defaults.description_max_tokens),
            chat_max_new_tokens=_env_int("CHAT_MAX_NEW_TOKENS", defaults.chat_max_new_tokens),
            thumbnail_url=os.getenv("THUMBNAIL_URL", defaults.thumbnail_url),
            queue_url=os.getenv("QUEUE_URL") or os.getenv("UPSTASH_URL"),
            queue_token=os.getenv("QUEUE_TOKEN") or os.getenv("UPSTASH_TOKEN"),
            queue_name=os.getenv("QUEUE_NAME", defaults.queue_name),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )

    @property
    def queue_enabled(self) -> bool:
        return bool(self.queue_url and self.queue_token)
