"""Command line interface for the realtime speech session client."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from . import audio
from .asr import OCIRealtimeSession
from .auth import CredentialProvider, RealtimeTokenIssuer
from .config import Settings, load_oci_config, load_settings
from .env_check import run_environment_check
from .errors import (
    AuthError,
    ConfigError,
    MicrophonePermissionError,
    UnsupportedPlatformError,
)
from .reconciler import ResultReconciler
from .supervisor import (
    SessionState,
    SessionSupervisor,
    SpeechError,
    SpeechEvent,
    SpeechPartialResults,
    SpeechResults,
)
from .transcript_log import TranscriptFileLogger


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def list_audio_devices() -> None:
    if audio.sd is None:
        print("Audio capture unavailable: PortAudio could not be loaded.")
        return
    devices = audio.sd.query_devices()
    for index, device in enumerate(devices):
        if not device["max_input_channels"]:
            continue
        print(f"{index:>3}: IN  {device['name']}  ({device['hostapi']})")


def print_settings() -> None:
    settings = load_settings()
    dumped = settings.model_dump()
    if "@" in dumped["auth"]["server_url"]:
        scheme, _, rest = dumped["auth"]["server_url"].partition("://")
        dumped["auth"]["server_url"] = f"{scheme}://***redacted***@{rest.split('@', 1)[1]}"
    print(json.dumps(dumped, indent=2, ensure_ascii=False))


async def check_health(settings: Settings) -> bool:
    async with CredentialProvider(settings.auth) as credentials:
        try:
            payload = await credentials.check_health()
        except AuthError as exc:
            print(f"Auth server unreachable at {settings.auth.server_url}: {exc}")
            return False
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return True


async def issue_token() -> None:
    config = load_oci_config()
    async with RealtimeTokenIssuer(config) as issuer:
        payload = await issuer.issue()
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def build_supervisor(settings: Settings) -> SessionSupervisor:
    credentials = CredentialProvider(settings.auth)
    return SessionSupervisor(
        credentials,
        lambda: OCIRealtimeSession(settings.transcription),
        audio.SoundDeviceSampler(settings.audio),
        reconciler=ResultReconciler.from_config(settings.reconciler),
        config=settings.supervisor,
    )


def _print_guidance(error: BaseException) -> None:
    print(f"\nCannot continue: {error}")
    if isinstance(error, MicrophonePermissionError):
        print("Grant microphone access to this terminal in the OS privacy settings, then retry.")
    elif isinstance(error, UnsupportedPlatformError):
        print("Install the PortAudio runtime so sounddevice can open the microphone.")


async def run_listener(log_file_override: Optional[str] = None) -> int:
    """Listen continuously until a stop signal or an unfixable error."""

    settings = load_settings()
    supervisor = build_supervisor(settings)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    fatal: List[BaseException] = []

    def handle_stop(*_args):
        logging.info("Received stop signal, shutting down.")
        stop_event.set()

    def register_signal(sig: int, handler, label: str) -> None:
        try:
            loop.add_signal_handler(sig, handler)
            logging.debug("Registered %s using loop.add_signal_handler.", label)
        except (NotImplementedError, RuntimeError, ValueError):
            try:
                signal.signal(sig, lambda *_args: handler())
                logging.debug("Registered %s using signal.signal fallback.", label)
            except (ValueError, OSError, RuntimeError):
                logging.debug("Signal %s not supported on this platform.", label)

    register_signal(signal.SIGINT, handle_stop, "SIGINT")
    register_signal(signal.SIGTERM, handle_stop, "SIGTERM")

    with TranscriptFileLogger(settings.logging, override_path=log_file_override) as transcript_log:

        def on_event(event: SpeechEvent) -> None:
            if isinstance(event, SpeechPartialResults):
                print(f"  ... {event.text}")
            elif isinstance(event, SpeechResults):
                print(f"> {event.text}")
                transcript_log.log_final(event.text, event.confidence)
            elif isinstance(event, SpeechError) and not event.recoverable:
                fatal.append(event.error)
                stop_event.set()

        unsubscribe = supervisor.subscribe(on_event)
        try:
            async with supervisor.credentials:
                while not stop_event.is_set():
                    if supervisor.state is SessionState.IDLE:
                        await supervisor.start()
                    try:
                        await asyncio.wait_for(stop_event.wait(), timeout=0.5)
                    except asyncio.TimeoutError:
                        pass
                await supervisor.close()
        finally:
            unsubscribe()

    if fatal:
        _print_guidance(fatal[0])
        return 1
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Realtime speech transcription against the OCI realtime speech service."
    )
    parser.add_argument("--list-devices", action="store_true", help="List audio input devices and exit.")
    parser.add_argument(
        "--show-config", action="store_true", help="Print loaded configuration and exit."
    )
    parser.add_argument(
        "--check-environment",
        action="store_true",
        help="Run dependency/configuration readiness checks and exit.",
    )
    parser.add_argument(
        "--check-health",
        action="store_true",
        help="Query the auth server health endpoint and exit.",
    )
    parser.add_argument(
        "--issue-token",
        action="store_true",
        help="Request a realtime session token with the local OCI signing identity and exit.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (DEBUG, INFO, WARNING, ERROR).",
    )
    parser.add_argument(
        "--log-file",
        help="Override transcript log file output path.",
    )
    args = parser.parse_args()

    configure_logging(args.log_level)

    if args.list_devices:
        list_audio_devices()
        return

    try:
        if args.show_config:
            print_settings()
            return

        if args.check_environment:
            if not run_environment_check():
                sys.exit(1)
            return

        if args.check_health:
            if not asyncio.run(check_health(load_settings())):
                sys.exit(1)
            return

        if args.issue_token:
            try:
                asyncio.run(issue_token())
            except AuthError as exc:
                print(f"Token issuance failed: {exc}")
                sys.exit(1)
            return

        sys.exit(asyncio.run(run_listener(args.log_file)))
    except ConfigError as exc:
        print(f"Configuration error: {exc}")
        sys.exit(2)


if __name__ == "__main__":
    main()
