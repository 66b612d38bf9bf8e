"""Error taxonomy shared by the speech session components."""

from __future__ import annotations

from typing import Optional


class SpeechSessionError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(SpeechSessionError):
    """Raised when configuration or credential files are missing or malformed."""


class AuthError(SpeechSessionError):
    """Raised when a session credential cannot be obtained."""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (status={self.status})"


class MicrophonePermissionError(SpeechSessionError):
    """Raised when access to the microphone is denied."""


class UnsupportedPlatformError(SpeechSessionError):
    """Raised when audio capture is not available on this platform."""


class AudioCaptureError(SpeechSessionError):
    """Raised when the audio device fails after access was granted."""


class TranscriptionError(SpeechSessionError):
    """Failure reported by a transcription session."""

    def __init__(self, message: str, kind: str = "transport") -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class TransportError(TranscriptionError):
    """Handshake failure, timeout, send failure or abnormal closure."""

    def __init__(self, message: str, kind: str = "connect", code: Optional[int] = None) -> None:
        super().__init__(message, kind=kind)
        self.code = code


class ProtocolError(TranscriptionError):
    """The service sent an explicit ERROR event."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind="service")


UNFIXABLE_ERRORS = (MicrophonePermissionError, UnsupportedPlatformError)


def is_unfixable(error: BaseException) -> bool:
    """Return True when retrying cannot help and the user has to act."""

    return isinstance(error, UNFIXABLE_ERRORS)
