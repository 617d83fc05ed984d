"""Messages exchanged between the foreground and the inference worker.

Commands flow in (tagged by ``type``), events flow out (tagged by ``status``).
Both are pydantic models that serialize to the JSON objects sent over the
``/ws/worker`` WebSocket.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

Role = Literal["user", "assistant", "system"]


class ProtocolError(ValueError):
    """Raised when a message carries an unknown tag or a malformed payload."""


class Message(BaseModel):
    """One entry of the conversation log. ``content`` grows while tokens stream in."""

    role: Role
    content: str = ""


# ---------------------------------------------------------------------------
# Outbound events
# ---------------------------------------------------------------------------

class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class LoadingEvent(_Event):
    """Model files begin fetching."""

    status: Literal["loading"] = "loading"
    data: str = ""


class InitiateEvent(_Event):
    """A model file starts downloading."""

    status: Literal["initiate"] = "initiate"
    file: str
    name: str = ""
    loaded: int = 0
    total: int = 0


class ProgressEvent(_Event):
    status: Literal["progress"] = "progress"
    file: str
    name: str = ""
    loaded: int = 0
    total: int = 0
    progress: float = 0.0


class DoneEvent(_Event):
    status: Literal["done"] = "done"
    file: str
    name: str = ""


class ReadyEvent(_Event):
    """Models are resident and the worker accepts work."""

    status: Literal["ready"] = "ready"


class StartEvent(_Event):
    status: Literal["start"] = "start"


class UpdateEvent(_Event):
    """Newly decoded text, with the running tokens-per-second estimate."""

    status: Literal["update"] = "update"
    output: str
    tps: Optional[float] = None
    num_tokens: int = Field(0, alias="numTokens")


class CompleteEvent(_Event):
    status: Literal["complete"] = "complete"


class ErrorEvent(_Event):
    status: Literal["error"] = "error"
    data: str = ""


WorkerEvent = Union[
    LoadingEvent,
    InitiateEvent,
    ProgressEvent,
    DoneEvent,
    ReadyEvent,
    StartEvent,
    UpdateEvent,
    CompleteEvent,
    ErrorEvent,
]

EVENT_TYPES = {
    cls.model_fields["status"].default: cls
    for cls in (
        LoadingEvent,
        InitiateEvent,
        ProgressEvent,
        DoneEvent,
        ReadyEvent,
        StartEvent,
        UpdateEvent,
        CompleteEvent,
        ErrorEvent,
    )
}


def event_to_dict(event: WorkerEvent) -> dict:
    """The JSON object sent to the browser, using wire names (``numTokens``)."""
    return event.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Inbound commands
# ---------------------------------------------------------------------------

class _Command(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class CheckCommand(_Command):
    """Ask whether the inference device is usable."""

    type: Literal["check"] = "check"


class LoadCommand(_Command):
    type: Literal["load"] = "load"


class GenerateCommand(_Command):
    type: Literal["generate"] = "generate"
    messages: List[Message] = Field(alias="data")


class InterruptCommand(_Command):
    type: Literal["interrupt"] = "interrupt"


WorkerCommand = Annotated[
    Union[CheckCommand, LoadCommand, GenerateCommand, InterruptCommand],
    Field(discriminator="type"),
]

_commands = TypeAdapter(WorkerCommand)


def parse_command(raw: Union[str, bytes]) -> WorkerCommand:
    """Build a command from its JSON text, e.g. ``{"type": "generate", "data": [...]}``."""
    try:
        return _commands.validate_json(raw)
    except ValidationError as e:
        raise ProtocolError(_describe(e)) from e


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]
