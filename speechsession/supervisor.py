"""Public facade coordinating credentials, audio capture and transcription."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Deque, List, Optional, Set, Union

import numpy as np

from .asr.base import TranscriptEvent, TranscriptionSession
from .audio import AudioSampler, pcm16_bytes
from .auth.credentials import CredentialProvider
from .config import SupervisorConfig
from .errors import TranscriptionError, is_unfixable
from .reconciler import ResultReconciler


class SessionState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass(frozen=True)
class SpeechStart:
    pass


@dataclass(frozen=True)
class SpeechEnd:
    pass


@dataclass(frozen=True)
class SpeechPartialResults:
    text: str


@dataclass(frozen=True)
class SpeechResults:
    text: str
    confidence: Optional[float] = None


@dataclass(frozen=True)
class SpeechVolumeChanged:
    level: float


@dataclass(frozen=True)
class SpeechError:
    error: BaseException
    recoverable: bool


SpeechEvent = Union[
    SpeechStart, SpeechEnd, SpeechPartialResults, SpeechResults, SpeechVolumeChanged, SpeechError
]
SpeechListener = Callable[[SpeechEvent], None]
SessionFactory = Callable[[], TranscriptionSession]


class SessionSupervisor:
    """Own one speech session at a time and expose a uniform event stream.

    Every start/stop cycle emits at most one :class:`SpeechStart` and one
    :class:`SpeechEnd`. Failures from any component end in teardown, the
    ``ERROR`` state and exactly one :class:`SpeechError`. Recoverable errors
    return to ``IDLE`` after a cooldown; unfixable ones wait for ``stop()``.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        session_factory: SessionFactory,
        sampler: AudioSampler,
        reconciler: Optional[ResultReconciler] = None,
        config: Optional[SupervisorConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.credentials = credentials
        self.sampler = sampler
        self.reconciler = reconciler or ResultReconciler()
        self.config = config or SupervisorConfig()
        self._session_factory = session_factory
        self._clock = clock

        self._state = SessionState.IDLE
        self._lock = asyncio.Lock()
        self._listeners: List[SpeechListener] = []
        self._queues: List[asyncio.Queue] = []
        self._session: Optional[TranscriptionSession] = None
        self._session_unsubscribers: List[Callable[[], None]] = []
        self._frames: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._start_task: Optional[asyncio.Task[None]] = None
        self._cooldown_task: Optional[asyncio.Task[None]] = None
        self._background: Set[asyncio.Task] = set()
        self._error_times: Deque[float] = deque()
        self._started = False
        self.last_error: Optional[BaseException] = None

    @property
    def state(self) -> SessionState:
        return self._state

    # ------------------------------------------------------------------ events

    def subscribe(self, listener: SpeechListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def events(self) -> AsyncIterator[SpeechEvent]:
        """Yield events emitted after the first ``__anext__`` call."""

        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)

    def _emit(self, event: SpeechEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # pylint: disable=broad-except
                logging.exception("Speech event listener %r failed.", listener)
        for queue in self._queues:
            queue.put_nowait(event)

    # --------------------------------------------------------------- lifecycle

    async def start(self) -> bool:
        """Bring a session up; return False when busy or when startup failed."""

        if self._state is not SessionState.IDLE:
            logging.info("Start ignored: session is %s.", self._state.value)
            return False
        self._state = SessionState.AUTHENTICATING
        self._started = False

        task = asyncio.create_task(self._bring_up(), name="speech-session-start")
        self._start_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            self._spawn(self.stop())
            raise
        finally:
            if self._start_task is task and task.done():
                self._start_task = None

        if task.cancelled():
            return False
        error = task.exception()
        if error is not None:
            await self._fail(error)
            return False
        return True

    async def _bring_up(self) -> None:
        credential = await self.credentials.get_token()

        self._state = SessionState.CONNECTING
        session = self._session_factory()
        self._session = session
        self._session_unsubscribers = [
            session.on_result(self._handle_result),
            session.on_error(self._handle_session_error),
            session.on_close(self._handle_session_close),
        ]
        try:
            await session.open(credential)
        finally:
            # The token is consumed by the attempt whatever its outcome.
            self.credentials.invalidate()

        frames: asyncio.Queue = asyncio.Queue(maxsize=self.config.frame_queue_size)
        self._frames = frames
        self._pump_task = asyncio.create_task(self._pump(session, frames), name="speech-audio-pump")
        await self.sampler.start(self._on_frame)

        self._state = SessionState.STREAMING
        self._started = True
        logging.info("Speech session streaming.")
        self._emit(SpeechStart())

    async def stop(self) -> None:
        """Tear the session down; also acknowledges an ``ERROR`` state."""

        if self._state is SessionState.IDLE:
            return
        async with self._lock:
            if self._state is SessionState.IDLE:
                return
            if self._state is SessionState.ERROR:
                self._cancel_cooldown()
                self._state = SessionState.IDLE
                logging.info("Speech session error acknowledged.")
                return

            self._state = SessionState.STOPPING
            await self._cancel_start_task()
            await self._teardown()
            self._state = SessionState.IDLE
            logging.info("Speech session stopped.")
            if self._started:
                self._started = False
                self._emit(SpeechEnd())

    async def restart(self) -> bool:
        await self.stop()
        self.credentials.invalidate()
        return await self.start()

    async def close(self) -> None:
        """Stop everything, including pending cooldown and background tasks."""

        await self.stop()
        self._cancel_cooldown()
        for task in list(self._background):
            if task is not asyncio.current_task():
                task.cancel()

    # ----------------------------------------------------------------- plumbing

    def _on_frame(self, frame: np.ndarray, volume: float) -> None:
        self._emit(SpeechVolumeChanged(max(0.0, min(float(volume), 1.0))))
        frames = self._frames
        if frames is None:
            return
        if frames.full():
            frames.get_nowait()
            logging.debug("Audio frame queue full; dropped oldest frame.")
        frames.put_nowait(pcm16_bytes(frame))

    async def _pump(self, session: TranscriptionSession, frames: asyncio.Queue) -> None:
        while True:
            chunk = await frames.get()
            await session.send_frame(chunk)

    def _handle_result(self, event: TranscriptEvent) -> None:
        reconciled = self.reconciler.ingest(event)
        if reconciled is None:
            return
        if reconciled.is_final:
            logging.info("Final: %s", reconciled.text)
            self._emit(SpeechResults(reconciled.text, reconciled.confidence))
        else:
            self._emit(SpeechPartialResults(reconciled.text))

    def _handle_session_error(self, error: TranscriptionError) -> None:
        self._spawn(self._fail(error))

    def _handle_session_close(self, code: int, reason: str) -> None:
        logging.info("Speech channel closed (code=%s, reason=%s).", code, reason or "-")
        if code == 1000 and self._state is SessionState.STREAMING:
            self._spawn(self._stop_if_streaming())

    async def _stop_if_streaming(self) -> None:
        # An error reported just before the close owns the teardown.
        if self._state is SessionState.STREAMING:
            await self.stop()

    async def _fail(self, error: BaseException) -> None:
        async with self._lock:
            if self._state in (SessionState.IDLE, SessionState.ERROR):
                logging.debug("Ignoring error after teardown: %s", error)
                return
            self._state = SessionState.STOPPING
            await self._cancel_start_task()
            await self._teardown()

            self._state = SessionState.ERROR
            self.last_error = error
            recoverable = not is_unfixable(error)
            if recoverable:
                logging.warning("Speech session error (recoverable): %s", error)
            else:
                logging.error("Speech session error (requires user action): %s", error)
            if self._started:
                self._started = False
                self._emit(SpeechEnd())
            self._emit(SpeechError(error, recoverable))
            if recoverable:
                self._schedule_cooldown(self._next_cooldown())

    def _next_cooldown(self) -> float:
        now = self._clock()
        self._error_times.append(now)
        window = self.config.repeated_error_window_seconds
        while self._error_times and now - self._error_times[0] > window:
            self._error_times.popleft()
        if len(self._error_times) > self.config.repeated_error_threshold:
            logging.warning(
                "%d errors within %.0fs; backing off for %.1fs.",
                len(self._error_times),
                window,
                self.config.repeated_error_cooldown_seconds,
            )
            return self.config.repeated_error_cooldown_seconds
        return self.config.recoverable_cooldown_seconds

    def _schedule_cooldown(self, delay: float) -> None:
        self._cancel_cooldown()
        self._cooldown_task = asyncio.create_task(self._cooldown(delay), name="speech-error-cooldown")

    async def _cooldown(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._state is SessionState.ERROR:
            self._state = SessionState.IDLE
            logging.info("Speech session ready after error cooldown.")

    def _cancel_cooldown(self) -> None:
        task = self._cooldown_task
        self._cooldown_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _cancel_start_task(self) -> None:
        task = self._start_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.wait({task})

    async def _teardown(self) -> None:
        try:
            await self.sampler.stop()
        except Exception as exc:  # pylint: disable=broad-except
            logging.warning("Failed to stop audio sampler cleanly: %s", exc)

        pump = self._pump_task
        self._pump_task = None
        self._frames = None
        if pump is not None:
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump

        for unsubscribe in self._session_unsubscribers:
            unsubscribe()
        self._session_unsubscribers = []
        session = self._session
        self._session = None
        if session is not None:
            try:
                await session.close()
            except Exception as exc:  # pylint: disable=broad-except
                logging.warning("Failed to close transcription session cleanly: %s", exc)

        self.credentials.invalidate()
        self.reconciler.reset()

    def _spawn(self, coro) -> asyncio.Task:  # noqa: ANN001
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
