"""Prompt construction for the title and description requests."""

from typing import List

from .protocol import Message

SYSTEM_PROMPT = "You are a helpful assistant."
TITLE_INSTRUCTION = "Generate a short, catchy title for this transcript:"
DESCRIPTION_INSTRUCTION = "Generate a brief description for this transcript:"

DEFAULT_CHAR_LIMIT = 1000


def excerpt(transcript: str, limit: int = DEFAULT_CHAR_LIMIT) -> str:
    """Cut the transcript down to at most ``limit`` characters.

    The cut falls on the last whitespace in the final fifth of the window when
    there is one, so a word is not split in half. Both prompts use the same
    excerpt.
    """
    text = transcript.strip()
    if limit <= 0 or len(text) <= limit:
        return text
    window = text[:limit]
    cut = max(window.rfind(c) for c in " \t\n\r")
    if cut >= limit - limit // 5:
        window = window[:cut]
    return window.rstrip()


def _messages(instruction: str, transcript: str, limit: int) -> List[Message]:
    return [
        Message(role="system", content=SYSTEM_PROMPT),
        Message(role="user", content=f"{instruction}\n\n{excerpt(transcript, limit)}"),
    ]


def title_messages(transcript: str, limit: int = DEFAULT_CHAR_LIMIT) -> List[Message]:
    return _messages(TITLE_INSTRUCTION, transcript, limit)


def description_messages(transcript: str, limit: int = DEFAULT_CHAR_LIMIT) -> List[Message]:
    return _messages(DESCRIPTION_INSTRUCTION, transcript, limit)
