"""Abstractions shared by realtime transcription sessions."""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from ..auth.credentials import Credential
from ..errors import TranscriptionError


@dataclass(frozen=True)
class TranscriptEvent:
    """Represents one transcription update."""

    text: str
    is_final: bool
    confidence: Optional[float] = None
    received_at: float = field(default_factory=time.monotonic)
    raw: Optional[dict] = field(default=None, compare=False, repr=False)


class SessionPhase(str, Enum):
    """Lifecycle of one streaming channel."""

    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    STREAMING = "streaming"
    CLOSING = "closing"
    ERROR = "error"


ResultCallback = Callable[[TranscriptEvent], None]
ErrorCallback = Callable[[TranscriptionError], None]
CloseCallback = Callable[[int, str], None]


class TranscriptionSession(abc.ABC):
    """Interface for a single-use realtime speech-to-text channel.

    Callbacks are synchronous and run on the event loop; none fire once
    :meth:`close` has returned.
    """

    def __init__(self) -> None:
        self._result_callbacks: List[ResultCallback] = []
        self._error_callbacks: List[ErrorCallback] = []
        self._close_callbacks: List[CloseCallback] = []
        self._callbacks_enabled = True

    def on_result(self, callback: ResultCallback) -> Callable[[], None]:
        return self._register(self._result_callbacks, callback)

    def on_error(self, callback: ErrorCallback) -> Callable[[], None]:
        return self._register(self._error_callbacks, callback)

    def on_close(self, callback: CloseCallback) -> Callable[[], None]:
        return self._register(self._close_callbacks, callback)

    @staticmethod
    def _register(registry: list, callback: Callable) -> Callable[[], None]:
        registry.append(callback)

        def unregister() -> None:
            if callback in registry:
                registry.remove(callback)

        return unregister

    def _dispatch(self, registry: list, *args) -> None:
        if not self._callbacks_enabled:
            return
        for callback in list(registry):
            try:
                callback(*args)
            except Exception:  # pylint: disable=broad-except
                logging.exception("Transcription session callback %r failed.", callback)

    def _emit_result(self, event: TranscriptEvent) -> None:
        self._dispatch(self._result_callbacks, event)

    def _emit_error(self, error: TranscriptionError) -> None:
        self._dispatch(self._error_callbacks, error)

    def _emit_close(self, code: int, reason: str) -> None:
        self._dispatch(self._close_callbacks, code, reason)

    @property
    @abc.abstractmethod
    def phase(self) -> SessionPhase:  # pragma: no cover - protocol
        ...

    @abc.abstractmethod
    async def open(self, credential: Credential) -> None:
        """Connect, authenticate and return once the service acknowledged."""

    @abc.abstractmethod
    async def send_frame(self, frame: bytes) -> None:
        """Stream raw PCM16LE audio; never raises."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Close the channel normally and silence all callbacks."""
