import sys
import os
import threading
import time

import pytest

# Ensure the project root is in sys.path so `from titlegen.main import app` works
# with relative imports inside the titlegen package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from titlegen.config import Settings  # noqa: E402
from titlegen.main import create_app  # noqa: E402
from titlegen.prompts import DESCRIPTION_INSTRUCTION, TITLE_INSTRUCTION  # noqa: E402
from titlegen.protocol import DoneEvent, InitiateEvent, ProgressEvent  # noqa: E402
from titlegen.transcriber import Transcript, TranscriptChunk  # noqa: E402


class FakeBackend:
    """In-memory stand-in for the transformers models."""

    def __init__(self, tokens=("Hello", ", ", "world"), loaded=True, check_error=None):
        self.tokens = list(tokens)
        self._loaded = loaded
        self.check_error = check_error
        self.title = "  A Catchy Title  "
        self.description = "A short description of the video."
        self.title_error = None
        self.description_error = None
        self.completions = []
        self.chats = []

    @property
    def loaded(self):
        return self._loaded

    def check(self):
        if self.check_error:
            raise RuntimeError(self.check_error)
        return "cpu"

    def load(self, on_event=None):
        if self._loaded:
            return
        if on_event:
            on_event(InitiateEvent(file="fake/model.safetensors", name="fake", total=10))
            on_event(ProgressEvent(file="fake/model.safetensors", name="fake", loaded=10, total=10, progress=100.0))
            on_event(DoneEvent(file="fake/model.safetensors", name="fake"))
        self._loaded = True

    def stream_chat(self, messages, *, max_new_tokens, on_text, should_stop):
        self.chats.append(list(messages))
        for count, token in enumerate(self.tokens, start=1):
            if should_stop():
                break
            on_text(token, count)

    def complete_chat(self, messages, *, max_new_tokens):
        self.completions.append((list(messages), max_new_tokens))
        prompt = messages[-1].content
        if prompt.startswith(TITLE_INSTRUCTION):
            if self.title_error:
                raise self.title_error
            return self.title
        if prompt.startswith(DESCRIPTION_INSTRUCTION):
            if self.description_error:
                raise self.description_error
            return self.description
        return ""

    def transcribe(self, samples, sampling_rate):
        return Transcript(
            chunks=[
                TranscriptChunk(text=" Hello everyone,", timestamp=(0.0, 1.5)),
                TranscriptChunk(text=" welcome back.", timestamp=(1.5, 3.0)),
            ]
        )


class BlockingBackend(FakeBackend):
    """Streams one token, then waits until the generation is interrupted."""

    def __init__(self, **kwargs):
        super().__init__(tokens=("Once",), **kwargs)
        self.waiting = threading.Event()

    def stream_chat(self, messages, *, max_new_tokens, on_text, should_stop):
        self.chats.append(list(messages))
        on_text("Once", 1)
        self.waiting.set()
        deadline = time.monotonic() + 5
        while not should_stop() and time.monotonic() < deadline:
            time.sleep(0.01)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def app(settings, backend):
    return create_app(settings=settings, backend=backend)
