"""Background inference worker.

The worker owns every model call for one foreground. The foreground posts
commands without waiting for them; the worker pushes events back in the order
it produces them. Blocking model calls run in threads so the event loop stays
free to accept an ``interrupt`` while a generation is streaming.
"""

import asyncio
import logging
import threading
import time
from typing import AsyncGenerator, Optional, Sequence, Set

from .config import Settings
from .models import InferenceBackend
from .protocol import (
    CheckCommand,
    CompleteEvent,
    ErrorEvent,
    GenerateCommand,
    InterruptCommand,
    LoadCommand,
    LoadingEvent,
    Message,
    ReadyEvent,
    StartEvent,
    UpdateEvent,
    WorkerCommand,
    WorkerEvent,
)

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "A generation is already in progress"


class InferenceWorker:
    """Runs model loading and generation off the event loop for one connection."""

    def __init__(self, backend: InferenceBackend, settings: Settings) -> None:
        self.backend = backend
        self.settings = settings
        self._events: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._interrupted = threading.Event()
        self._job: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def is_running(self) -> bool:
        return self._job is not None and not self._job.done()

    async def post_message(self, command: WorkerCommand) -> None:
        """Hand a command to the worker. Returns before the work is done."""
        if self._closed:
            raise RuntimeError("Worker is closed")
        self._loop = asyncio.get_running_loop()

        if isinstance(command, InterruptCommand):
            self._interrupt()
        elif isinstance(command, GenerateCommand):
            if self.is_running:
                logger.warning("Rejected generate: %s", BUSY_MESSAGE)
                self._emit(ErrorEvent(data=BUSY_MESSAGE))
                return
            self._interrupted.clear()
            self._job = self._spawn(self._generate(command.messages))
        elif isinstance(command, CheckCommand):
            self._spawn(self._check())
        elif isinstance(command, LoadCommand):
            self._spawn(self._load())
        else:
            raise TypeError(f"Unsupported worker command: {command!r}")

    async def events(self) -> AsyncGenerator[WorkerEvent, None]:
        """Yield events as the worker produces them, until the worker is closed."""
        while True:
            event = await self._events.get()
            if event is None:
                break
            yield event

    async def close(self) -> None:
        """Stop any generation, drop pending work and end the event stream."""
        if self._closed:
            return
        self._closed = True
        self._interrupted.set()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._events.put_nowait(None)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _emit(self, event: WorkerEvent) -> None:
        self._events.put_nowait(event)

    def _emit_threadsafe(self, event: WorkerEvent) -> None:
        self._loop.call_soon_threadsafe(self._events.put_nowait, event)

    def _interrupt(self) -> None:
        if not self.is_running:
            logger.debug("Interrupt received while idle, nothing to stop")
            return
        logger.info("Interrupting generation")
        # The running job still finishes with a 'complete' event
        self._interrupted.set()

    async def _check(self) -> None:
        try:
            device = await asyncio.to_thread(self.backend.check)
        except Exception as e:
            logger.warning("Feature check failed: %s", e)
            self._emit(ErrorEvent(data=str(e)))
            return
        logger.info("Feature check passed, using device %s", device)

    async def _load(self) -> bool:
        self._emit(LoadingEvent(data="Loading models..."))
        try:
            await asyncio.to_thread(self.backend.load, self._emit_threadsafe)
        except Exception as e:
            logger.exception("Model loading failed")
            self._emit(ErrorEvent(data=str(e)))
            return False
        self._emit(ReadyEvent())
        return True

    async def _generate(self, messages: Sequence[Message]) -> None:
        if not self.backend.loaded and not await self._load():
            self._emit(CompleteEvent())
            return

        started: Optional[float] = None

        def on_text(text: str, num_tokens: int) -> None:
            nonlocal started
            now = time.perf_counter()
            if started is None:
                started = now
            elapsed = now - started
            tps = num_tokens / elapsed if elapsed > 0 else None
            self._emit_threadsafe(UpdateEvent(output=text, tps=tps, num_tokens=num_tokens))

        self._emit(StartEvent())
        logger.info("Generation started (%d messages)", len(messages))
        try:
            await asyncio.to_thread(
                self.backend.stream_chat,
                list(messages),
                max_new_tokens=self.settings.chat_max_new_tokens,
                on_text=on_text,
                should_stop=self._interrupted.is_set,
            )
        except Exception as e:
            logger.exception("Generation failed")
            self._emit(ErrorEvent(data=str(e)))
        finally:
            self._emit(CompleteEvent())
            logger.info("Generation complete%s", " (interrupted)" if self._interrupted.is_set() else "")
