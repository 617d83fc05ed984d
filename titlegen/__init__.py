"""
Video title and description generator built with FastAPI, exposing
- an index.html UI with a drop target for a video or audio file,
- an upload endpoint that decodes the file audio with ffmpeg,
- WebSocket endpoints for local Whisper transcription and for a
background inference worker that streams chat model output,
- and HTTP endpoints that draft a title and description from a transcript.
"""

__version__ = "0.2.0"
