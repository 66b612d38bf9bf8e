"""Lifecycle tests for the session supervisor with in-memory collaborators."""

from __future__ import annotations

import asyncio
import json
import unittest

import numpy as np

from fakes import FakeConnector, FakeCredentials, FakeSession, FakeWebSocket, wait_until
from speechsession.asr.oci_realtime import OCIRealtimeSession
from speechsession.audio import PassthroughSampler
from speechsession.config import SupervisorConfig, TranscriptionConfig
from speechsession.errors import AuthError, MicrophonePermissionError, TransportError
from speechsession.reconciler import ResultReconciler
from speechsession.supervisor import (
    SessionState,
    SessionSupervisor,
    SpeechEnd,
    SpeechError,
    SpeechPartialResults,
    SpeechResults,
    SpeechStart,
    SpeechVolumeChanged,
)


class DeniedSampler(PassthroughSampler):
    async def start(self, on_frame) -> None:  # noqa: ANN001
        raise MicrophonePermissionError("Microphone access denied")


class SessionSupervisorTests(unittest.IsolatedAsyncioTestCase):
    """start/stop/restart, error recovery and the emitted event sequence."""

    async def asyncSetUp(self) -> None:
        self.credentials = FakeCredentials()
        self.sessions = []
        self.sampler = PassthroughSampler()
        self.config = SupervisorConfig(recoverable_cooldown_seconds=0.05)
        self.supervisor = self._make_supervisor(self.sampler)

    async def asyncTearDown(self) -> None:
        await self.supervisor.close()

    def _factory(self) -> FakeSession:
        session = FakeSession()
        self.sessions.append(session)
        return session

    def _make_supervisor(self, sampler, config=None) -> SessionSupervisor:  # noqa: ANN001
        supervisor = SessionSupervisor(
            self.credentials,
            self._factory,
            sampler,
            reconciler=ResultReconciler(),
            config=config or self.config,
        )
        self.events = []
        supervisor.subscribe(self.events.append)
        return supervisor

    def lifecycle(self) -> list:
        return [event for event in self.events if not isinstance(event, SpeechVolumeChanged)]

    async def test_start_streams_audio_and_stop_releases(self) -> None:
        self.assertTrue(await self.supervisor.start())
        self.assertIs(self.supervisor.state, SessionState.STREAMING)
        self.assertTrue(self.sampler.active)
        self.assertEqual(self.sessions[0].credential.token, "token-1")

        self.sampler.push_samples(np.array([0.5, -0.5], dtype=np.float32))
        await wait_until(lambda: bool(self.sessions[0].frames))
        self.assertEqual(self.sessions[0].frames, [b"\x00\x40\x00\xc0"])
        volumes = [event for event in self.events if isinstance(event, SpeechVolumeChanged)]
        self.assertAlmostEqual(volumes[0].level, 0.5, places=6)

        await self.supervisor.stop()
        self.assertIs(self.supervisor.state, SessionState.IDLE)
        self.assertFalse(self.sampler.active)
        self.assertTrue(self.sessions[0].closed)
        self.assertEqual(self.lifecycle(), [SpeechStart(), SpeechEnd()])

        await self.supervisor.stop()
        self.assertEqual(self.lifecycle(), [SpeechStart(), SpeechEnd()])

    async def test_token_is_never_reused_across_cycles(self) -> None:
        await self.supervisor.start()
        await self.supervisor.stop()
        await self.supervisor.start()
        self.assertEqual(self.credentials.fetches, 2)
        self.assertEqual([s.credential.token for s in self.sessions], ["token-1", "token-2"])
        self.assertGreaterEqual(self.credentials.invalidations, 2)

    async def test_restart_opens_fresh_session(self) -> None:
        await self.supervisor.start()
        self.assertTrue(await self.supervisor.restart())
        self.assertEqual(len(self.sessions), 2)
        self.assertTrue(self.sessions[0].closed)
        self.assertEqual(self.sessions[1].credential.token, "token-2")
        self.assertEqual(self.lifecycle(), [SpeechStart(), SpeechEnd(), SpeechStart()])

    async def test_concurrent_start_is_rejected(self) -> None:
        self.credentials.gate = asyncio.Event()
        first = asyncio.create_task(self.supervisor.start())
        await wait_until(lambda: self.supervisor.state is SessionState.AUTHENTICATING)
        self.assertFalse(await self.supervisor.start())

        self.credentials.gate.set()
        self.assertTrue(await first)
        self.assertEqual(len(self.sessions), 1)

    async def test_results_are_reconciled(self) -> None:
        await self.supervisor.start()
        session = self.sessions[0]
        session.push_result("take a", False)
        session.push_result("take a", False)
        session.push_result("take a picture", True, at=1.0)
        session.push_result("take a picture", True, at=1.5)

        self.assertEqual(
            self.lifecycle(),
            [SpeechStart(), SpeechPartialResults("take a"), SpeechResults("take a picture", None)],
        )

    async def test_transport_error_recovers_to_idle(self) -> None:
        await self.supervisor.start()
        self.sessions[0].push_error(TransportError("Connection closed: 1006", kind="closed", code=1006))

        await wait_until(lambda: self.supervisor.state is SessionState.ERROR)
        lifecycle = self.lifecycle()
        self.assertEqual(lifecycle[:2], [SpeechStart(), SpeechEnd()])
        self.assertIsInstance(lifecycle[2], SpeechError)
        self.assertTrue(lifecycle[2].recoverable)
        self.assertTrue(self.sessions[0].closed)
        self.assertFalse(self.sampler.active)

        await wait_until(lambda: self.supervisor.state is SessionState.IDLE, timeout=2.0)
        self.assertTrue(await self.supervisor.start())
        self.assertEqual(self.lifecycle()[-1], SpeechStart())

    async def test_permission_denial_is_unfixable(self) -> None:
        self.supervisor = self._make_supervisor(DeniedSampler())
        self.assertFalse(await self.supervisor.start())

        self.assertIs(self.supervisor.state, SessionState.ERROR)
        errors = [event for event in self.events if isinstance(event, SpeechError)]
        self.assertEqual(len(errors), 1)
        self.assertFalse(errors[0].recoverable)
        self.assertIsInstance(errors[0].error, MicrophonePermissionError)
        self.assertIsNone(self.supervisor._cooldown_task)
        self.assertTrue(self.sessions[0].closed)
        self.assertNotIn(SpeechStart(), self.events)
        self.assertNotIn(SpeechEnd(), self.events)

        await asyncio.sleep(0.1)
        self.assertIs(self.supervisor.state, SessionState.ERROR)
        self.assertFalse(await self.supervisor.start())

        await self.supervisor.stop()
        self.assertIs(self.supervisor.state, SessionState.IDLE)

    async def test_auth_failure_reports_recoverable_error(self) -> None:
        self.credentials.error = AuthError("Request to /authenticate failed", status=401)
        self.assertFalse(await self.supervisor.start())
        self.assertEqual(self.sessions, [])
        errors = [event for event in self.events if isinstance(event, SpeechError)]
        self.assertEqual(len(errors), 1)
        self.assertTrue(errors[0].recoverable)

    async def test_open_failure_consumes_token(self) -> None:
        self.sessions_error = TransportError("No acknowledgement", kind="timeout")

        def factory() -> FakeSession:
            session = self._factory()
            session.open_error = self.sessions_error
            return session

        self.supervisor._session_factory = factory
        self.assertFalse(await self.supervisor.start())
        self.assertGreaterEqual(self.credentials.invalidations, 1)
        self.assertTrue(self.sessions[0].closed)
        self.assertIs(self.supervisor.state, SessionState.ERROR)

    async def test_stop_mid_handshake(self) -> None:
        gate = asyncio.Event()

        def factory() -> FakeSession:
            session = self._factory()
            session.gate = gate
            return session

        self.supervisor._session_factory = factory
        starting = asyncio.create_task(self.supervisor.start())
        await wait_until(lambda: self.supervisor.state is SessionState.CONNECTING and bool(self.sessions))

        await self.supervisor.stop()
        self.assertFalse(await starting)
        self.assertIs(self.supervisor.state, SessionState.IDLE)
        self.assertTrue(self.sessions[0].closed)
        self.assertEqual(self.lifecycle(), [])

    async def test_normal_server_close_stops_session(self) -> None:
        await self.supervisor.start()
        self.sessions[0].push_close(1000)
        await wait_until(lambda: self.supervisor.state is SessionState.IDLE)
        self.assertEqual(self.lifecycle(), [SpeechStart(), SpeechEnd()])

    async def test_repeated_errors_extend_cooldown(self) -> None:
        config = SupervisorConfig(
            recoverable_cooldown_seconds=0.01,
            repeated_error_threshold=1,
            repeated_error_window_seconds=10,
            repeated_error_cooldown_seconds=5,
        )
        self.supervisor = self._make_supervisor(self.sampler, config=config)
        self.credentials.error = AuthError("down")

        self.assertFalse(await self.supervisor.start())
        await wait_until(lambda: self.supervisor.state is SessionState.IDLE)
        self.assertFalse(await self.supervisor.start())
        await asyncio.sleep(0.1)
        self.assertIs(self.supervisor.state, SessionState.ERROR)

    async def test_events_iterator(self) -> None:
        received = []

        async def consume() -> None:
            async for event in self.supervisor.events():
                if isinstance(event, SpeechVolumeChanged):
                    continue
                received.append(event)
                if isinstance(event, SpeechEnd):
                    return

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await self.supervisor.start()
        await self.supervisor.stop()
        await asyncio.wait_for(consumer, timeout=1.0)
        self.assertEqual(received, [SpeechStart(), SpeechEnd()])


class RealtimeSessionSupervisorTests(unittest.IsolatedAsyncioTestCase):
    """The supervisor driving the websocket session over an in-memory connection."""

    async def asyncSetUp(self) -> None:
        self.credentials = FakeCredentials()
        self.sampler = PassthroughSampler()
        self.websockets = []
        self.supervisor = SessionSupervisor(
            self.credentials,
            self._factory,
            self.sampler,
            reconciler=ResultReconciler(),
            config=SupervisorConfig(recoverable_cooldown_seconds=0.05),
        )
        self.events = []
        self.supervisor.subscribe(self.events.append)

    async def asyncTearDown(self) -> None:
        await self.supervisor.close()

    def _factory(self) -> OCIRealtimeSession:
        websocket = FakeWebSocket()
        self.websockets.append(websocket)
        return OCIRealtimeSession(
            TranscriptionConfig(speech_host="speech.test", connect_timeout_seconds=1.0),
            connector=FakeConnector(websocket),
        )

    def lifecycle(self) -> list:
        return [event for event in self.events if not isinstance(event, SpeechVolumeChanged)]

    async def test_service_error_ends_session_once_then_restarts(self) -> None:
        self.assertTrue(await self.supervisor.start())
        websocket = self.websockets[0]
        self.assertIsInstance(websocket.sent[0], str)
        self.assertEqual(json.loads(websocket.sent[0])["token"], "token-1")

        self.sampler.push_samples(np.array([0.5, -0.5], dtype=np.float32))
        await wait_until(lambda: bool(websocket.audio))
        self.assertEqual(websocket.audio, [b"\x00\x40\x00\xc0"])

        websocket.feed(
            {"event": "RESULT", "transcriptions": [{"transcription": "turn on the light", "isFinal": True}]}
        )
        websocket.feed(
            {"event": "RESULT", "transcriptions": [{"transcription": "turn on the lights", "isFinal": True}]}
        )
        websocket.feed({"event": "ERROR", "message": "Quota exceeded"})
        await wait_until(lambda: self.supervisor.state is SessionState.ERROR)
        await asyncio.sleep(0.01)

        lifecycle = self.lifecycle()
        self.assertEqual(
            [type(event) for event in lifecycle], [SpeechStart, SpeechResults, SpeechEnd, SpeechError]
        )
        self.assertEqual(lifecycle[1].text, "turn on the light")
        self.assertTrue(lifecycle[3].recoverable)
        self.assertFalse(self.sampler.active)

        await wait_until(lambda: self.supervisor.state is SessionState.IDLE)
        self.assertTrue(await self.supervisor.start())
        self.assertEqual(len(self.websockets), 2)
        self.assertEqual(json.loads(self.websockets[1].sent[0])["token"], "token-2")
        self.assertIs(self.supervisor.state, SessionState.STREAMING)


if __name__ == "__main__":
    unittest.main()
