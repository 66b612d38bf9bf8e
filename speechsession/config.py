"""Configuration loading utilities for the speech session manager."""

from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError

_TRUTHY = {"1", "true", "yes"}


class AuthConfig(BaseModel):
    """Where and how session credentials are obtained."""

    server_url: str = Field(default="http://localhost:8450", min_length=8)
    region: Optional[str] = Field(
        default=None,
        description="Region override; None asks the auth server via GET /region.",
    )
    token_ttl_seconds: float = Field(
        default=55 * 60,
        gt=0,
        description="Assumed credential lifetime; the service does not report one.",
    )
    refresh_margin_seconds: float = Field(default=5 * 60, ge=0)
    request_timeout_seconds: float = Field(default=10.0, gt=0, le=120.0)


class AudioInputConfig(BaseModel):
    """Audio capture configuration."""

    device_index: Optional[int] = Field(
        default=None,
        description="Input device index; None selects system default.",
    )
    chunk_duration_seconds: float = Field(default=0.256, gt=0, le=2.0)


class TranscriptionConfig(BaseModel):
    """Realtime streaming endpoint configuration."""

    speech_host: Optional[str] = Field(
        default=None,
        description="Explicit realtime host; derived from the credential region when unset.",
    )
    connect_timeout_seconds: float = Field(default=10.0, gt=0, le=60.0)
    close_timeout_seconds: float = Field(default=5.0, gt=0, le=30.0)
    pre_ack_buffer_seconds: float = Field(default=3.0, ge=0, le=10.0)


class ReconcilerConfig(BaseModel):
    """Duplicate-final suppression tuning."""

    dedup_window_seconds: float = Field(default=2.0, ge=0, le=30.0)
    similarity_threshold: float = Field(default=0.8, ge=0, le=1.0)


class SupervisorConfig(BaseModel):
    """Session lifecycle policy."""

    recoverable_cooldown_seconds: float = Field(default=2.0, ge=0, le=60.0)
    repeated_error_threshold: int = Field(default=3, ge=1, le=100)
    repeated_error_window_seconds: float = Field(default=10.0, gt=0, le=600.0)
    repeated_error_cooldown_seconds: float = Field(default=5.0, ge=0, le=300.0)
    frame_queue_size: int = Field(default=32, ge=1, le=1024)


class TranscriptLoggingConfig(BaseModel):
    """Controls transcript persistence."""

    enabled: bool = False
    file_path: Optional[str] = None
    include_timestamps: bool = True
    overwrite: bool = False


class Settings(BaseModel):
    """Aggregated settings for a speech session."""

    auth: AuthConfig = AuthConfig()
    audio: AudioInputConfig = AudioInputConfig()
    transcription: TranscriptionConfig = TranscriptionConfig()
    reconciler: ReconcilerConfig = ReconcilerConfig()
    supervisor: SupervisorConfig = SupervisorConfig()
    logging: TranscriptLoggingConfig = TranscriptLoggingConfig()


def _flag(env: Mapping[str, str], key: str, default: str) -> bool:
    return env.get(key, default).lower() in _TRUTHY


def settings_from_env(env: Mapping[str, str]) -> Settings:
    """Build settings from a mapping of environment variables."""

    try:
        auth = AuthConfig(
            server_url=env.get("SPEECH_AUTH_SERVER_URL", "http://localhost:8450").rstrip("/"),
            region=env.get("SPEECH_REGION") or None,
            token_ttl_seconds=float(env.get("SPEECH_TOKEN_TTL_SECONDS", str(55 * 60))),
            refresh_margin_seconds=float(env.get("SPEECH_TOKEN_REFRESH_MARGIN_SECONDS", "300")),
            request_timeout_seconds=float(env.get("SPEECH_AUTH_TIMEOUT_SECONDS", "10")),
        )
        audio = AudioInputConfig(
            device_index=(
                int(env["AUDIO_DEVICE_INDEX"])
                if env.get("AUDIO_DEVICE_INDEX")
                else None
            ),
            chunk_duration_seconds=float(env.get("AUDIO_CHUNK_DURATION_SECONDS", "0.256")),
        )
        transcription = TranscriptionConfig(
            speech_host=env.get("SPEECH_REALTIME_HOST") or None,
            connect_timeout_seconds=float(env.get("SPEECH_CONNECT_TIMEOUT_SECONDS", "10")),
            close_timeout_seconds=float(env.get("SPEECH_CLOSE_TIMEOUT_SECONDS", "5")),
            pre_ack_buffer_seconds=float(env.get("SPEECH_PRE_ACK_BUFFER_SECONDS", "3")),
        )
        reconciler = ReconcilerConfig(
            dedup_window_seconds=float(env.get("SPEECH_DEDUP_WINDOW_SECONDS", "2.0")),
            similarity_threshold=float(env.get("SPEECH_SIMILARITY_THRESHOLD", "0.8")),
        )
        supervisor = SupervisorConfig(
            recoverable_cooldown_seconds=float(env.get("SPEECH_ERROR_COOLDOWN_SECONDS", "2.0")),
            repeated_error_threshold=int(env.get("SPEECH_REPEATED_ERROR_THRESHOLD", "3")),
            repeated_error_window_seconds=float(env.get("SPEECH_REPEATED_ERROR_WINDOW_SECONDS", "10")),
            repeated_error_cooldown_seconds=float(
                env.get("SPEECH_REPEATED_ERROR_COOLDOWN_SECONDS", "5")
            ),
            frame_queue_size=int(env.get("SPEECH_FRAME_QUEUE_SIZE", "32")),
        )
        logging_cfg = TranscriptLoggingConfig(
            enabled=_flag(env, "TRANSCRIPT_LOG_ENABLED", "false") or bool(env.get("TRANSCRIPT_LOG_PATH")),
            file_path=env.get("TRANSCRIPT_LOG_PATH"),
            include_timestamps=_flag(env, "TRANSCRIPT_LOG_WITH_TIMESTAMPS", "true"),
            overwrite=_flag(env, "TRANSCRIPT_LOG_OVERWRITE", "false"),
        )
        return Settings(
            auth=auth,
            audio=audio,
            transcription=transcription,
            reconciler=reconciler,
            supervisor=supervisor,
            logging=logging_cfg,
        )
    except ValueError as exc:
        # pydantic's ValidationError is a ValueError subclass as well
        raise ConfigError(f"Configuration invalid: {exc}") from exc


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load settings from environment variables and .env files."""

    load_dotenv()
    return settings_from_env(os.environ)


# --- credential-signing proxy -------------------------------------------------

PLACEHOLDER_VALUES = (
    "YOUR_USER_OCID_HERE",
    "YOUR_TENANCY_OCID_HERE",
    "YOUR_FINGERPRINT_HERE",
    "path/to/your/private/key.pem",
)

_FINGERPRINT_RE = re.compile(r"^[a-fA-F0-9:]{47}$")


class OCISigningConfig(BaseModel):
    """API signing identity used by the credential-issuing proxy."""

    user: str = Field(..., min_length=1)
    tenancy: str = Field(..., min_length=1)
    fingerprint: str = Field(..., min_length=1)
    region: str = Field(default="eu-amsterdam-1", min_length=3)
    private_key_path: str = Field(..., min_length=1)
    private_key: str = Field(default="", repr=False)

    @property
    def compartment_id(self) -> str:
        # The tenancy OCID doubles as the compartment.
        return self.tenancy


def _parse_config_file(path: Path) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("//", "#", "[")):
            continue
        if "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        if key.strip() and value.strip():
            values[key.strip()] = value.strip()
    return values


def has_placeholder_values(config: OCISigningConfig) -> bool:
    fields = (config.user, config.tenancy, config.fingerprint, config.private_key_path)
    return any(placeholder in value for value in fields for placeholder in PLACEHOLDER_VALUES)


def load_oci_config(
    env: Optional[Mapping[str, str]] = None,
    config_path: Optional[Path] = None,
) -> OCISigningConfig:
    """Load the proxy's signing identity.

    Environment variables take precedence; a ``key=value`` config file is the
    development fallback. Any problem raises :class:`ConfigError` so the proxy
    refuses to serve instead of running with placeholder credentials.
    """

    if env is None:
        load_dotenv()
        env = os.environ

    env_keys = ("OCI_USER_OCID", "OCI_TENANCY_OCID", "OCI_FINGERPRINT", "OCI_REGION", "OCI_PRIVATE_KEY_PATH")
    if all(env.get(key) for key in env_keys):
        logging.info("Loading OCI signing config from environment variables.")
        raw = {
            "user": env["OCI_USER_OCID"],
            "tenancy": env["OCI_TENANCY_OCID"],
            "fingerprint": env["OCI_FINGERPRINT"],
            "region": env["OCI_REGION"],
            "private_key_path": env["OCI_PRIVATE_KEY_PATH"],
        }
        base_dir = Path.cwd()
    else:
        path = config_path or Path(env.get("OCI_CONFIG_FILE", "config/config.txt"))
        if not path.exists():
            raise ConfigError(f"OCI configuration file not found at {path}")
        logging.warning("Loading OCI signing config from %s; prefer environment variables in production.", path)
        values = _parse_config_file(path)
        missing = [key for key in ("user", "fingerprint", "tenancy", "key_file") if not values.get(key)]
        if missing:
            raise ConfigError(f"Missing required OCI configuration: {', '.join(missing)}")
        raw = {
            "user": values["user"],
            "tenancy": values["tenancy"],
            "fingerprint": values["fingerprint"],
            "region": values.get("region", "eu-amsterdam-1"),
            "private_key_path": values["key_file"],
        }
        base_dir = path.parent

    try:
        config = OCISigningConfig(**raw)
    except ValidationError as exc:
        raise ConfigError(f"OCI configuration invalid: {exc}") from exc

    if has_placeholder_values(config):
        raise ConfigError("OCI configuration contains placeholder values.")
    if not config.user.startswith("ocid1.user.oc1."):
        raise ConfigError("Invalid user OCID format")
    if not config.tenancy.startswith("ocid1.tenancy.oc1."):
        raise ConfigError("Invalid tenancy OCID format")
    if not _FINGERPRINT_RE.match(config.fingerprint):
        logging.warning("Fingerprint format may be invalid. Expected xx:xx:...:xx (16 pairs).")

    key_path = Path(config.private_key_path).expanduser()
    if not key_path.is_absolute():
        key_path = base_dir / key_path
    try:
        private_key = key_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read private key file: {key_path}") from exc
    if "PRIVATE KEY" not in private_key:
        raise ConfigError("Private key file does not appear to be in PEM format")

    return config.model_copy(update={"private_key": private_key})
