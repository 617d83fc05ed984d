"""FastAPI application exposing the upload, transcription and generation endpoints and the single-page UI."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, ValidationError

from . import __version__
from .audio import AudioDecodeError, AudioStore, decode_audio
from .config import ASR_MODELS, Settings
from .generator import ContentGenerator
from .models import InferenceBackend, TransformersBackend
from .pipeline import VideoProcessor
from .protocol import (
    ErrorEvent,
    GenerateCommand,
    InterruptCommand,
    ProtocolError,
    event_to_dict,
    parse_command,
)
from .publisher import QueuePublisher
from .session import GenerationInProgressError, SessionState
from .worker import InferenceWorker

logger = logging.getLogger(__name__)

INDEX_HTML = Path(__file__).parent / "index.html"

router = APIRouter()


# Request models
class GenerateContentRequest(BaseModel):
    transcript: str


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_backend(request: Request) -> InferenceBackend:
    return request.app.state.backend


def get_audio_store(request: Request) -> AudioStore:
    return request.app.state.audio_store


def get_publisher(request: Request) -> QueuePublisher:
    return request.app.state.publisher


def _error(message: str, status_code: int, **kwargs) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, **kwargs)


async def _decode_upload(file: UploadFile, store: AudioStore, settings: Settings):
    data = await file.read()
    samples = await decode_audio(data, settings.sampling_rate)
    return store.replace(
        data,
        samples,
        filename=file.filename or "upload",
        mime_type=file.content_type or "application/octet-stream",
        sampling_rate=settings.sampling_rate,
    )


@router.get("/")
async def get_index() -> HTMLResponse:
    """Serve the index.html single-page UI."""
    return HTMLResponse(INDEX_HTML.read_text(encoding="utf-8"))


@router.post("/upload")
async def upload_file(
    file: UploadFile = File(...),
    store: AudioStore = Depends(get_audio_store),
    settings: Settings = Depends(get_settings),
) -> Response:
    """Decode the uploaded video or audio file and keep it as the current audio."""
    try:
        record = await _decode_upload(file, store, settings)
    except AudioDecodeError as e:
        logger.warning("Could not decode %s: %s", file.filename, e)
        return _error(f"Could not decode audio: {e}", 422)
    return JSONResponse(record.to_dict())


@router.get("/media/{audio_id}")
async def get_media(audio_id: str, store: AudioStore = Depends(get_audio_store)) -> Response:
    """Play back the original upload."""
    record = store.get(audio_id)
    if record is None:
        return _error("Unknown audio id", 404)
    return Response(record.data, media_type=record.mime_type)


@router.get("/api/models")
async def list_models(settings: Settings = Depends(get_settings)) -> dict:
    return {
        "default": settings.asr_model,
        "chat_model": settings.llm_model,
        "models": [{"id": model_id, "size_mb": size} for model_id, size in ASR_MODELS.items()],
    }


@router.api_route("/api/generate-content", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def generate_content(
    request: Request,
    backend: InferenceBackend = Depends(get_backend),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """Draft a title and description for ``{"transcript": ...}``."""
    if request.method != "POST":
        return _error("Method not allowed", 405, headers={"Allow": "POST"})
    try:
        payload = GenerateContentRequest.model_validate_json(await request.body())
    except ValidationError as e:
        problem = e.errors()[0]
        return _error(f"Invalid request body: {problem['msg']}", 400)

    generator = ContentGenerator(backend, settings)
    content = await asyncio.to_thread(generator.generate, payload.transcript)
    return JSONResponse(content.to_dict())


@router.post("/api/process")
async def process_video(
    file: UploadFile = File(...),
    store: AudioStore = Depends(get_audio_store),
    backend: InferenceBackend = Depends(get_backend),
    settings: Settings = Depends(get_settings),
    publisher: QueuePublisher = Depends(get_publisher),
) -> Response:
    """Upload, transcribe and draft title, description and thumbnail in one request."""
    try:
        record = await _decode_upload(file, store, settings)
    except AudioDecodeError as e:
        logger.warning("Could not decode %s: %s", file.filename, e)
        return _error(f"Could not decode audio: {e}", 422)
    result = await VideoProcessor(backend, settings, publisher).process(record)
    return JSONResponse(result.to_dict())


@router.websocket("/ws/transcribe")
async def websocket_transcribe(websocket: WebSocket) -> None:
    """Receive an audio id, run speech recognition on it and send back the timed chunks."""
    await websocket.accept()
    state = websocket.app.state

    audio_id = (await websocket.receive_text()).strip()
    record = state.audio_store.get(audio_id)
    if record is None:
        await websocket.send_json({"status": "error", "data": "Unknown audio id"})
        await websocket.close()
        return

    logger.info("Transcribing %s", record.filename)
    try:
        transcript = await asyncio.to_thread(
            state.backend.transcribe, record.samples, record.sampling_rate
        )
    except Exception as e:
        logger.exception("Transcription failed for %s", record.filename)
        await websocket.send_json({"status": "error", "data": str(e)})
        await websocket.close()
        return

    for chunk in transcript.chunks:
        await websocket.send_json({"status": "chunk", **chunk.to_dict()})
    await websocket.send_json({"status": "complete", **transcript.to_dict()})
    await websocket.close()


@router.websocket("/ws/worker")
async def websocket_worker(websocket: WebSocket) -> None:
    """Bridge the browser to a dedicated inference worker for the lifetime of the socket."""
    await websocket.accept()
    state = websocket.app.state
    worker = InferenceWorker(state.backend, state.settings)
    session = SessionState()
    logger.info("Worker connection established")

    async def send_error(message: str) -> None:
        await websocket.send_json(event_to_dict(ErrorEvent(data=message)))

    async def forward_events():
        async for event in worker.events():
            session.apply(event)
            await websocket.send_json(event_to_dict(event))

    forward_task = asyncio.create_task(forward_events())

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                command = parse_command(raw)
            except ProtocolError as e:
                await send_error(f"Invalid command: {e}")
                continue

            if isinstance(command, GenerateCommand):
                try:
                    session.begin(list(command.messages))
                except GenerationInProgressError as e:
                    await send_error(str(e))
                    continue
            elif isinstance(command, InterruptCommand) and not session.interrupt():
                continue
            await worker.post_message(command)
    except WebSocketDisconnect:
        logger.info("Worker connection closed")
    finally:
        await worker.close()
        forward_task.cancel()
        await asyncio.gather(forward_task, return_exceptions=True)


def create_app(
    settings: Optional[Settings] = None,
    backend: Optional[InferenceBackend] = None,
    publisher: Optional[QueuePublisher] = None,
) -> FastAPI:
    """Build the application and the collaborators it owns."""
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title="Video title generator", version=__version__)
    app.state.settings = settings
    app.state.backend = backend or TransformersBackend(settings)
    app.state.audio_store = AudioStore()
    app.state.publisher = publisher or QueuePublisher(settings)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
