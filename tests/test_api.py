import pytest
from unittest.mock import AsyncMock, patch

import numpy as np
from httpx import AsyncClient, ASGITransport
from starlette.testclient import TestClient

from titlegen.audio import AudioDecodeError
from titlegen.config import Settings
from titlegen.main import create_app
from titlegen.publisher import QueuePublisher

from conftest import BlockingBackend

ONE_SECOND = np.zeros(16000, dtype=np.float32)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _upload(client, name="video.mp4", data=b"fake-video-bytes", mime="video/mp4"):
    with patch("titlegen.main.decode_audio", AsyncMock(return_value=ONE_SECOND)):
        return await client.post("/upload", files={"file": (name, data, mime)})


# ---------------------------------------------------------------------------
# GET /
# ---------------------------------------------------------------------------

class TestGetIndex:
    @pytest.mark.asyncio
    async def test_returns_html(self, app):
        async with _client(app) as client:
            response = await client.get("/")

        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert "/ws/worker" in response.text


# ---------------------------------------------------------------------------
# POST /upload and GET /media/{id}
# ---------------------------------------------------------------------------

class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_decodes_and_returns_playback_url(self, app):
        async with _client(app) as client:
            response = await _upload(client)
            body = response.json()
            media = await client.get(body["url"])

        assert response.status_code == 200
        assert body["source"] == "FILE"
        assert body["mime_type"] == "video/mp4"
        assert body["duration"] == 1.0
        assert media.status_code == 200
        assert media.content == b"fake-video-bytes"
        assert media.headers["content-type"].startswith("video/mp4")

    @pytest.mark.asyncio
    async def test_new_upload_replaces_previous(self, app):
        async with _client(app) as client:
            first = (await _upload(client, name="a.mp4")).json()
            second = (await _upload(client, name="b.mp4")).json()
            old = await client.get(first["url"])
            new = await client.get(second["url"])

        assert old.status_code == 404
        assert new.status_code == 200

    @pytest.mark.asyncio
    async def test_undecodable_upload_returns_422(self, app):
        failing = AsyncMock(side_effect=AudioDecodeError("Invalid data found"))
        async with _client(app) as client:
            with patch("titlegen.main.decode_audio", failing):
                response = await client.post("/upload", files={"file": ("x.txt", b"text", "text/plain")})

        assert response.status_code == 422
        assert "Invalid data found" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_unknown_media_returns_404(self, app):
        async with _client(app) as client:
            response = await client.get("/media/nope")
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# /api/generate-content
# ---------------------------------------------------------------------------

class TestGenerateContent:
    @pytest.mark.asyncio
    async def test_post_returns_title_and_description(self, app):
        async with _client(app) as client:
            response = await client.post("/api/generate-content", json={"transcript": "hello"})

        assert response.status_code == 200
        body = response.json()
        assert isinstance(body["title"], str) and body["title"]
        assert isinstance(body["description"], str) and body["description"]

    @pytest.mark.asyncio
    async def test_generation_errors_still_return_text(self, app, backend):
        backend.title_error = RuntimeError("boom")
        backend.description_error = RuntimeError("boom")
        async with _client(app) as client:
            response = await client.post("/api/generate-content", json={"transcript": "hello"})

        assert response.status_code == 200
        assert response.json() == {
            "title": "Error generating title",
            "description": "Error generating description",
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    async def test_other_methods_return_405(self, app, method):
        async with _client(app) as client:
            response = await client.request(method, "/api/generate-content")

        assert response.status_code == 405
        assert response.json() == {"error": "Method not allowed"}

    @pytest.mark.asyncio
    async def test_malformed_json_returns_400(self, app):
        async with _client(app) as client:
            response = await client.post(
                "/api/generate-content",
                content=b"{not json",
                headers={"Content-Type": "application/json"},
            )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_transcript_returns_400(self, app):
        async with _client(app) as client:
            response = await client.post("/api/generate-content", json={"text": "hello"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("transcript", [42, None, ["hello"], {"text": "hello"}])
    async def test_non_string_transcript_returns_400(self, app, backend, transcript):
        async with _client(app) as client:
            response = await client.post("/api/generate-content", json={"transcript": transcript})

        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid request body")
        assert backend.completions == []

    @pytest.mark.asyncio
    async def test_json_array_body_returns_400(self, app):
        async with _client(app) as client:
            response = await client.post("/api/generate-content", json=["hello"])
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# POST /api/process
# ---------------------------------------------------------------------------

class TestProcess:
    @pytest.mark.asyncio
    async def test_process_returns_everything_and_pushes_to_queue(self, settings, backend):
        publisher = QueuePublisher(settings)
        publisher.push = AsyncMock(return_value=True)
        app = create_app(settings=settings, backend=backend, publisher=publisher)

        async with _client(app) as client:
            with patch("titlegen.main.decode_audio", AsyncMock(return_value=ONE_SECOND)):
                response = await client.post(
                    "/api/process", files={"file": ("talk.mp4", b"bytes", "video/mp4")}
                )

        body = response.json()
        assert response.status_code == 200
        assert body["transcript"] == "Hello everyone, welcome back."
        assert body["title"] == "A Catchy Title"
        assert body["thumbnail_url"] == settings.thumbnail_url
        publisher.push.assert_awaited_once_with(
            "video-processed",
            {"videoId": "talk.mp4", "title": "A Catchy Title", "description": body["description"]},
        )


# ---------------------------------------------------------------------------
# WS /ws/transcribe
# ---------------------------------------------------------------------------

class TestWsTranscribe:
    def test_sends_chunks_then_full_text(self, app):
        with TestClient(app) as client:
            with patch("titlegen.main.decode_audio", AsyncMock(return_value=ONE_SECOND)):
                audio = client.post("/upload", files={"file": ("a.mp4", b"x", "video/mp4")}).json()
            with client.websocket_connect("/ws/transcribe") as ws:
                ws.send_text(audio["audio_id"])
                first = ws.receive_json()
                second = ws.receive_json()
                done = ws.receive_json()

        assert first == {"status": "chunk", "text": " Hello everyone,", "timestamp": [0.0, 1.5]}
        assert second["status"] == "chunk"
        assert done["status"] == "complete"
        assert done["text"] == "Hello everyone, welcome back."
        assert [c["text"] for c in done["chunks"]] == [" Hello everyone,", " welcome back."]

    def test_unknown_audio_id(self, app):
        with TestClient(app) as client:
            with client.websocket_connect("/ws/transcribe") as ws:
                ws.send_text("missing")
                assert ws.receive_json() == {"status": "error", "data": "Unknown audio id"}


# ---------------------------------------------------------------------------
# WS /ws/worker
# ---------------------------------------------------------------------------

GENERATE = {"type": "generate", "data": [{"role": "user", "content": "Suggest a title"}]}


class TestWsWorker:
    def test_generate_streams_to_complete(self, app):
        with TestClient(app) as client:
            with client.websocket_connect("/ws/worker") as ws:
                ws.send_json(GENERATE)
                received = [ws.receive_json()]
                while received[-1]["status"] != "complete":
                    received.append(ws.receive_json())

        assert received[0] == {"status": "start"}
        updates = [m for m in received if m["status"] == "update"]
        assert "".join(m["output"] for m in updates) == "Hello, world"
        assert updates[-1]["numTokens"] == 3

    def test_invalid_command_is_answered_with_error(self, app):
        with TestClient(app) as client:
            with client.websocket_connect("/ws/worker") as ws:
                ws.send_text("not json")
                assert ws.receive_json()["status"] == "error"
                ws.send_json({"type": "reboot"})
                assert ws.receive_json()["status"] == "error"
                ws.send_json({"type": "generate", "data": [{"role": "robot", "content": "beep"}]})
                rejected = ws.receive_json()
                assert rejected["status"] == "error"
                assert rejected["data"].startswith("Invalid command")

    def test_interrupt_while_idle_does_not_break_the_worker(self, app):
        with TestClient(app) as client:
            with client.websocket_connect("/ws/worker") as ws:
                ws.send_json({"type": "interrupt"})
                ws.send_json(GENERATE)
                assert ws.receive_json() == {"status": "start"}

    def test_second_generate_rejected_until_interrupted(self):
        app = create_app(settings=Settings(), backend=BlockingBackend())
        with TestClient(app) as client:
            with client.websocket_connect("/ws/worker") as ws:
                ws.send_json(GENERATE)
                assert ws.receive_json() == {"status": "start"}
                assert ws.receive_json()["status"] == "update"

                ws.send_json(GENERATE)
                rejected = ws.receive_json()
                assert rejected == {"status": "error", "data": "A generation is already in progress"}

                ws.send_json({"type": "interrupt"})
                assert ws.receive_json() == {"status": "complete"}

                # the worker accepts new work once the previous job completed
                ws.send_json(GENERATE)
                assert ws.receive_json() == {"status": "start"}
                ws.send_json({"type": "interrupt"})
                while ws.receive_json()["status"] != "complete":
                    pass
