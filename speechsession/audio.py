"""Audio capture and PCM conversion."""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Callable, Optional, Union

import numpy as np

try:
    import sounddevice as sd
except OSError as _portaudio_exc:  # PortAudio shared library not installed
    sd = None
    _PORTAUDIO_ERROR: Optional[OSError] = _portaudio_exc
else:
    _PORTAUDIO_ERROR = None

from .config import AudioInputConfig
from .errors import AudioCaptureError, MicrophonePermissionError, UnsupportedPlatformError

SAMPLE_RATE = 16_000
CHANNELS = 1
PCM_MAX = 32767

FrameCallback = Callable[[np.ndarray, float], None]

_PERMISSION_MARKERS = ("permission", "denied", "not allowed", "notallowederror", "unauthorized")


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1, 1] to int16 with ``round(clamp(x) * 32767)``."""

    data = np.asarray(samples, dtype=np.float32).reshape(-1)
    scaled = np.round(np.clip(data, -1.0, 1.0).astype(np.float64) * PCM_MAX)
    return scaled.astype(np.int16)


def rms_volume(samples: np.ndarray) -> float:
    """Root-mean-square level of a float block, clamped to [0, 1]."""

    data = np.asarray(samples, dtype=np.float64).reshape(-1)
    if data.size == 0:
        return 0.0
    level = float(np.sqrt(np.mean(np.square(data))))
    return min(level, 1.0)


def pcm16_bytes(frame: np.ndarray) -> bytes:
    """Serialise an int16 frame as PCM16LE."""

    return np.asarray(frame, dtype="<i2").tobytes()


class AudioSampler(abc.ABC):
    """Source of 16 kHz mono PCM frames."""

    @abc.abstractmethod
    async def start(self, on_frame: FrameCallback) -> None:
        """Begin capture; ``on_frame(frame, volume)`` runs on the event loop."""

    @abc.abstractmethod
    async def stop(self) -> None:
        """Release the capture pipeline. Safe to call repeatedly."""

    @property
    @abc.abstractmethod
    def active(self) -> bool:  # pragma: no cover - protocol
        ...


class SoundDeviceSampler(AudioSampler):
    """Microphone capture through PortAudio."""

    def __init__(self, config: AudioInputConfig) -> None:
        self.config = config
        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_frame: Optional[FrameCallback] = None
        self._blocksize = max(1, int(round(SAMPLE_RATE * config.chunk_duration_seconds)))

    @property
    def active(self) -> bool:
        return self._stream is not None

    @property
    def blocksize(self) -> int:
        return self._blocksize

    def _callback(self, indata, frames: int, _time, status) -> None:  # noqa: ANN001
        if status:
            if status.input_overflow:
                logging.warning("Audio stream input overflow")
            else:
                logging.warning("Audio stream status: %s", status)
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        block = np.array(indata[:, 0] if getattr(indata, "ndim", 1) > 1 else indata, dtype=np.float32)
        loop.call_soon_threadsafe(self._deliver, block)

    def _deliver(self, block: np.ndarray) -> None:
        on_frame = self._on_frame
        if on_frame is None or self._stream is None:
            return
        on_frame(float_to_pcm16(block), rms_volume(block))

    async def start(self, on_frame: FrameCallback) -> None:
        if sd is None:
            raise UnsupportedPlatformError(f"Audio capture is not supported here: {_PORTAUDIO_ERROR}")
        if self._stream is not None:
            logging.debug("Audio sampler already running.")
            return

        self._loop = asyncio.get_running_loop()
        self._on_frame = on_frame
        try:
            stream = sd.InputStream(
                samplerate=SAMPLE_RATE,
                channels=CHANNELS,
                dtype="float32",
                blocksize=self._blocksize,
                device=self.config.device_index,
                callback=self._callback,
            )
            try:
                stream.start()
            except Exception:
                stream.close()
                raise
        except Exception as exc:  # pylint: disable=broad-except
            self._on_frame = None
            self._loop = None
            message = str(exc)
            if any(marker in message.lower() for marker in _PERMISSION_MARKERS):
                raise MicrophonePermissionError(f"Microphone access denied: {message}") from exc
            raise AudioCaptureError(f"Failed to initialise audio input: {message}") from exc

        self._stream = stream
        logging.info(
            "Audio capture started (device=%s, %d Hz, block=%d samples).",
            self.config.device_index if self.config.device_index is not None else "default",
            SAMPLE_RATE,
            self._blocksize,
        )

    async def stop(self) -> None:
        stream = self._stream
        self._stream = None
        self._on_frame = None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception as exc:  # noqa: BLE001
            logging.debug("Error stopping audio stream: %s", exc)
        finally:
            stream.close()
        self._loop = None
        logging.info("Audio capture stopped.")


class PassthroughSampler(AudioSampler):
    """Adapter for platforms where a native component captures audio.

    The native side calls :meth:`push_samples` or :meth:`push_pcm`; frames are
    forwarded only while the sampler is started.
    """

    def __init__(self) -> None:
        self._on_frame: Optional[FrameCallback] = None

    @property
    def active(self) -> bool:
        return self._on_frame is not None

    async def start(self, on_frame: FrameCallback) -> None:
        self._on_frame = on_frame

    async def stop(self) -> None:
        self._on_frame = None

    def push_samples(self, samples: np.ndarray) -> bool:
        on_frame = self._on_frame
        if on_frame is None:
            return False
        block = np.asarray(samples, dtype=np.float32)
        on_frame(float_to_pcm16(block), rms_volume(block))
        return True

    def push_pcm(self, frame: Union[bytes, np.ndarray], volume: Optional[float] = None) -> bool:
        on_frame = self._on_frame
        if on_frame is None:
            return False
        if isinstance(frame, (bytes, bytearray)):
            pcm = np.frombuffer(bytes(frame), dtype="<i2").astype(np.int16)
        else:
            pcm = np.asarray(frame, dtype=np.int16)
        if volume is None:
            volume = rms_volume(pcm.astype(np.float64) / PCM_MAX)
        on_frame(pcm, max(0.0, min(float(volume), 1.0)))
        return True
