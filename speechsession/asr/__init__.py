"""Realtime transcription sessions."""

from .base import SessionPhase, TranscriptEvent, TranscriptionSession
from .oci_realtime import OCIRealtimeSession, build_stream_url, realtime_host

__all__ = [
    "OCIRealtimeSession",
    "SessionPhase",
    "TranscriptEvent",
    "TranscriptionSession",
    "build_stream_url",
    "realtime_host",
]
