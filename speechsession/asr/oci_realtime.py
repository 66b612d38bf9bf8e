"""OCI realtime speech WebSocket session."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..auth.credentials import Credential
from ..config import TranscriptionConfig
from ..errors import ProtocolError, TranscriptionError, TransportError
from .base import SessionPhase, TranscriptEvent, TranscriptionSession

REALTIME_PATH = "/ws/transcribe/stream"
# Fixed service policy; order and literal text are what the service expects.
STREAM_QUERY = (
    ("isAckEnabled", "false"),
    ("partialSilenceThresholdInMs", "0"),
    ("finalSilenceThresholdInMs", "1000"),
    ("stabilizePartialResults", "NONE"),
    ("shouldIgnoreInvalidCustomizations", "false"),
    ("languageCode", "en-US"),
    ("modelDomain", "GENERIC"),
    ("punctuation", "NONE"),
    ("encoding", "audio/raw;rate=16000"),
)
BYTES_PER_SECOND = 16_000 * 2
NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006

Connector = Callable[..., Awaitable[Any]]


def realtime_host(region: str) -> str:
    return f"realtime.aiservice.{region}.oci.oraclecloud.com"


def build_stream_url(host: str) -> str:
    query = "&".join(f"{key}={value}" for key, value in STREAM_QUERY)
    return f"wss://{host}{REALTIME_PATH}?{query}"


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class OCIRealtimeSession(TranscriptionSession):
    """Manage one realtime transcription channel with the OCI speech service."""

    def __init__(self, config: TranscriptionConfig, connector: Optional[Connector] = None) -> None:
        super().__init__()
        self.config = config
        self._connector = connector or websockets.connect
        self._websocket = None
        self._phase = SessionPhase.IDLE
        self._listen_task: Optional[asyncio.Task[None]] = None
        self._ack: Optional[asyncio.Future] = None
        self._pending: Deque[bytes] = deque()
        self._pending_bytes = 0
        self._max_pending_bytes = int(config.pre_ack_buffer_seconds * BYTES_PER_SECOND)
        self._failed = False
        self._used = False

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    async def open(self, credential: Credential) -> None:
        if self._used:
            raise TransportError("Transcription sessions are single-use.", kind="connect")
        self._used = True

        host = self.config.speech_host
        if not host and credential.region:
            host = realtime_host(credential.region)
        if not host:
            raise TransportError("No realtime host configured and credential has no region.", kind="connect")

        self._ack = asyncio.get_running_loop().create_future()
        self._phase = SessionPhase.CONNECTING
        logging.info("Connecting to realtime speech endpoint %s.", host)
        try:
            self._websocket = await self._connector(
                build_stream_url(host),
                max_size=4 * 1024 * 1024,
                ping_interval=20,
                ping_timeout=20,
                close_timeout=self.config.close_timeout_seconds,
            )
        except asyncio.CancelledError:
            self._phase = SessionPhase.IDLE
            raise
        except Exception as exc:  # pylint: disable=broad-except
            self._phase = SessionPhase.ERROR
            raise TransportError(f"Failed to connect to realtime speech endpoint: {exc}") from exc

        self._phase = SessionPhase.AUTHENTICATING
        auth_message = {
            "authenticationType": "TOKEN",
            "token": credential.token,
            "compartmentId": credential.compartment_id,
        }
        try:
            await self._websocket.send(json.dumps(auth_message))
        except Exception as exc:  # pylint: disable=broad-except
            await self._abort()
            raise TransportError(f"Failed to send authentication message: {exc}", kind="send") from exc
        logging.debug("Sent authentication message for credential %s.", credential.redacted_token)

        self._listen_task = asyncio.create_task(self._listen_loop(), name="oci-speech-listener")
        timeout = self.config.connect_timeout_seconds
        try:
            await asyncio.wait_for(asyncio.shield(self._ack), timeout=timeout)
        except asyncio.TimeoutError as exc:
            await self._abort()
            raise TransportError(
                f"Speech service did not acknowledge within {timeout:.1f} seconds.", kind="timeout"
            ) from exc
        except TranscriptionError:
            await self._abort()
            raise
        logging.info("Realtime speech session connected.")

    async def send_frame(self, frame: bytes) -> None:
        if self._phase is SessionPhase.AUTHENTICATING:
            self._buffer_frame(frame)
            return
        websocket = self._websocket
        if self._phase is not SessionPhase.STREAMING or websocket is None:
            logging.debug("Dropping %d byte frame while %s.", len(frame), self._phase.value)
            return
        try:
            await websocket.send(frame)
        except ConnectionClosed:
            logging.debug("Dropping audio frame: channel already closed.")
        except Exception as exc:  # pylint: disable=broad-except
            logging.warning("Failed to stream audio frame: %s", exc)

    async def close(self) -> None:
        if self._phase is SessionPhase.IDLE and self._websocket is None and self._listen_task is None:
            return
        self._callbacks_enabled = False
        self._phase = SessionPhase.CLOSING

        task = self._listen_task
        self._listen_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        websocket = self._websocket
        self._websocket = None
        if websocket is not None:
            try:
                await websocket.close(code=NORMAL_CLOSURE, reason="client closing")
            except Exception as exc:  # noqa: BLE001
                logging.debug("Error while closing speech websocket: %s", exc)

        self._pending.clear()
        self._pending_bytes = 0
        self._retrieve_ack()
        self._phase = SessionPhase.IDLE
        logging.info("Realtime speech session closed.")

    async def _abort(self) -> None:
        await self.close()
        self._phase = SessionPhase.ERROR

    def _retrieve_ack(self) -> None:
        ack = self._ack
        if ack is not None and ack.done() and not ack.cancelled():
            ack.exception()

    def _buffer_frame(self, frame: bytes) -> None:
        self._pending.append(bytes(frame))
        self._pending_bytes += len(frame)
        while self._pending and self._pending_bytes > self._max_pending_bytes:
            dropped = self._pending.popleft()
            self._pending_bytes -= len(dropped)
            logging.debug("Pre-acknowledgement buffer full; dropped %d bytes.", len(dropped))

    async def _listen_loop(self) -> None:
        """Receive service events until the channel ends."""

        websocket = self._websocket
        assert websocket is not None  # nosec B101
        code, reason = NORMAL_CLOSURE, ""
        try:
            async for message in websocket:
                if isinstance(message, bytes):
                    logging.debug("Received binary %d bytes (ignored)", len(message))
                    continue
                try:
                    payload = json.loads(message)
                except ValueError:
                    logging.warning("Ignoring malformed speech service message: %.200s", message)
                    continue
                if not isinstance(payload, dict):
                    logging.warning("Ignoring unexpected speech service message: %.200s", message)
                    continue

                event = payload.get("event")
                if event == "CONNECT":
                    await self._handle_connect(websocket)
                elif event == "RESULT":
                    self._handle_result(payload)
                elif event == "ERROR":
                    message_text = str(payload.get("message") or "Speech service error")
                    logging.error("Speech service error: %s", payload)
                    self._fail(ProtocolError(message_text))
                    reason = "service error"
                    with contextlib.suppress(Exception):
                        await websocket.close(code=NORMAL_CLOSURE, reason=reason)
                    break
                else:
                    logging.debug("Speech service message ignored: %s", payload)
            else:
                close_code = getattr(websocket, "close_code", None)
                code = close_code if close_code is not None else NORMAL_CLOSURE
                reason = getattr(websocket, "close_reason", None) or ""
        except asyncio.CancelledError:
            logging.debug("Speech listener cancelled.")
            raise
        except ConnectionClosed as exc:
            received = exc.rcvd
            code = received.code if received is not None else ABNORMAL_CLOSURE
            reason = received.reason if received is not None else ""
        except Exception as exc:  # pylint: disable=broad-except
            logging.exception("Error while listening to speech stream: %s", exc)
            code, reason = 1011, str(exc)
            self._fail(TransportError(f"Speech listener stopped unexpectedly: {exc}", kind="closed"))

        if code != NORMAL_CLOSURE:
            self._fail(
                TransportError(f"Connection closed: {code} {reason}".strip(), kind="closed", code=code)
            )
        ack = self._ack
        if ack is not None and not ack.done():
            ack.set_exception(
                TransportError("Connection closed before acknowledgement.", kind="closed", code=code)
            )
        if self._phase is not SessionPhase.CLOSING:
            self._phase = SessionPhase.ERROR if self._failed else SessionPhase.IDLE
        self._emit_close(code, reason)

    async def _handle_connect(self, websocket) -> None:  # noqa: ANN001
        if self._phase is not SessionPhase.AUTHENTICATING:
            logging.debug("Ignoring duplicate CONNECT event.")
            return
        while self._pending:
            chunk = self._pending.popleft()
            self._pending_bytes -= len(chunk)
            await websocket.send(chunk)
        self._pending_bytes = 0
        self._phase = SessionPhase.STREAMING
        ack = self._ack
        if ack is not None and not ack.done():
            ack.set_result(None)

    def _handle_result(self, payload: Dict[str, Any]) -> None:
        for item in payload.get("transcriptions") or []:
            if not isinstance(item, dict):
                continue
            event = TranscriptEvent(
                text=str(item.get("transcription") or "").strip(),
                is_final=bool(item.get("isFinal")),
                confidence=_as_float(item.get("confidence")),
                raw=payload,
            )
            logging.debug("Transcript: %s (final=%s)", event.text, event.is_final)
            self._emit_result(event)

    def _fail(self, error: TranscriptionError) -> None:
        ack = self._ack
        if ack is not None and not ack.done():
            # Failures before the acknowledgement are raised from open().
            self._failed = True
            ack.set_exception(error)
            return
        if self._failed:
            return
        self._failed = True
        self._phase = SessionPhase.ERROR
        self._emit_error(error)
