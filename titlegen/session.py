"""Foreground mirror of the worker state: model status, download progress and the conversation log."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .protocol import (
    EVENT_TYPES,
    CompleteEvent,
    DoneEvent,
    ErrorEvent,
    InitiateEvent,
    LoadingEvent,
    Message,
    ProgressEvent,
    ReadyEvent,
    StartEvent,
    UpdateEvent,
    WorkerEvent,
)

logger = logging.getLogger(__name__)


class GenerationInProgressError(RuntimeError):
    """Raised when a generation is requested while another one is outstanding."""


class WorkerPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    RUNNING = "running"
    ERROR = "error"


@dataclass
class ProgressItem:
    file: str
    name: str = ""
    loaded: int = 0
    total: int = 0
    progress: float = 0.0


@dataclass
class SessionState:
    """What the UI shows about one worker.

    ``apply`` folds worker events into the state; ``submit`` and ``interrupt``
    are the user actions. The state never talks to the worker itself.
    """

    phase: WorkerPhase = WorkerPhase.UNINITIALIZED
    error: Optional[str] = None
    loading_message: str = ""
    progress_items: List[ProgressItem] = field(default_factory=list)
    is_running: bool = False
    messages: List[Message] = field(default_factory=list)
    tps: Optional[float] = None
    num_tokens: Optional[int] = None

    def submit(self, content: str) -> List[Message]:
        """Append a user message and mark a generation as outstanding.

        Returns the message log to send along with the ``generate`` command.
        """
        if self.is_running:
            raise GenerationInProgressError("A generation is already in progress")
        self.messages.append(Message(role="user", content=content))
        self.tps = None
        self.is_running = True
        return list(self.messages)

    def begin(self, messages: List[Message]) -> None:
        """Adopt a message log built elsewhere (e.g. by the browser) for a new generation."""
        if self.is_running:
            raise GenerationInProgressError("A generation is already in progress")
        self.messages = list(messages)
        self.tps = None
        self.is_running = True

    def interrupt(self) -> bool:
        """Whether an ``interrupt`` command should be sent.

        The running flag is left alone: the worker answers with ``complete``.
        """
        return self.is_running

    def apply(self, event: WorkerEvent) -> None:
        handler = _HANDLERS.get(type(event))
        if handler is None:
            raise TypeError(f"No handler for worker event {type(event).__name__}")
        handler(self, event)

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None


def _on_loading(state: SessionState, event: LoadingEvent) -> None:
    state.phase = WorkerPhase.LOADING
    state.loading_message = event.data


def _on_initiate(state: SessionState, event: InitiateEvent) -> None:
    state.progress_items.append(
        ProgressItem(file=event.file, name=event.name, loaded=event.loaded, total=event.total)
    )


def _on_progress(state: SessionState, event: ProgressEvent) -> None:
    for item in state.progress_items:
        if item.file == event.file:
            item.loaded = event.loaded
            item.total = event.total
            item.progress = event.progress


def _on_done(state: SessionState, event: DoneEvent) -> None:
    state.progress_items = [item for item in state.progress_items if item.file != event.file]


def _on_ready(state: SessionState, event: ReadyEvent) -> None:
    state.phase = WorkerPhase.READY
    state.error = None


def _on_start(state: SessionState, event: StartEvent) -> None:
    state.phase = WorkerPhase.RUNNING
    state.messages.append(Message(role="assistant", content=""))


def _on_update(state: SessionState, event: UpdateEvent) -> None:
    state.tps = event.tps
    state.num_tokens = event.num_tokens
    last = state.last_message
    if last is None or last.role != "assistant":
        # update without a start: open the assistant message now
        last = Message(role="assistant", content="")
        state.messages.append(last)
    last.content += event.output


def _on_complete(state: SessionState, event: CompleteEvent) -> None:
    state.is_running = False
    if state.phase is WorkerPhase.RUNNING:
        state.phase = WorkerPhase.READY


def _on_error(state: SessionState, event: ErrorEvent) -> None:
    logger.warning("Worker reported an error: %s", event.data)
    state.phase = WorkerPhase.ERROR
    state.error = event.data


_HANDLERS: Dict[type, Callable[[SessionState, WorkerEvent], None]] = {
    LoadingEvent: _on_loading,
    InitiateEvent: _on_initiate,
    ProgressEvent: _on_progress,
    DoneEvent: _on_done,
    ReadyEvent: _on_ready,
    StartEvent: _on_start,
    UpdateEvent: _on_update,
    CompleteEvent: _on_complete,
    ErrorEvent: _on_error,
}

_missing = set(EVENT_TYPES.values()) - set(_HANDLERS)
if _missing:
    raise ImportError(f"SessionState has no handler for: {sorted(c.__name__ for c in _missing)}")
