"""Readiness report for the speech session client: packages, .env keys and signing identity."""

from __future__ import annotations

import importlib.util
import sys
from pathlib import Path
from typing import Dict, List, Tuple

REQUIRED_PACKAGES: Dict[str, str] = {
    "aiohttp": "aiohttp",
    "cryptography": "cryptography",
    "numpy": "numpy",
    "pydantic": "pydantic",
    "python-dotenv": "dotenv",
    "sounddevice": "sounddevice",
    "websockets": "websockets",
}

SIGNING_KEYS = (
    "OCI_USER_OCID",
    "OCI_TENANCY_OCID",
    "OCI_FINGERPRINT",
    "OCI_REGION",
    "OCI_PRIVATE_KEY_PATH",
)


def _print_section(title: str) -> None:
    print("\n" + "=" * 60)
    print(f"  {title}")
    print("=" * 60)


def _missing_packages() -> List[str]:
    _print_section("1. Packages")
    missing: List[str] = []
    for pretty, module_name in sorted(REQUIRED_PACKAGES.items()):
        if importlib.util.find_spec(module_name) is None:
            print(f"  [!!] {pretty} (missing)")
            missing.append(pretty)
        else:
            print(f"  [OK] {pretty}")
    return missing


def _read_env_pairs(env_path: Path) -> Dict[str, str]:
    pairs: Dict[str, str] = {}
    try:
        with env_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                stripped = line.strip()
                if not stripped or stripped.startswith("#") or "=" not in stripped:
                    continue
                key, value = stripped.split("=", 1)
                pairs[key.strip()] = value.strip().strip('"')
    except FileNotFoundError:
        pass
    return pairs


def _check_session_env(env_path: Path, env_pairs: Dict[str, str]) -> Tuple[List[str], List[str]]:
    _print_section("2. Session settings (.env)")
    issues: List[str] = []
    warnings: List[str] = []
    if not env_path.exists():
        print("  [!!] .env not found")
        issues.append("Copy .env.example to .env and point SPEECH_AUTH_SERVER_URL at the auth server")
        return issues, warnings

    server_url = env_pairs.get("SPEECH_AUTH_SERVER_URL", "")
    print(f"    SPEECH_AUTH_SERVER_URL = {server_url or '(missing)'}")
    if not server_url:
        issues.append("SPEECH_AUTH_SERVER_URL not set in .env")
    elif not server_url.startswith(("http://", "https://")):
        issues.append("SPEECH_AUTH_SERVER_URL must start with http:// or https://")

    device = env_pairs.get("AUDIO_DEVICE_INDEX", "")
    print(f"    AUDIO_DEVICE_INDEX = {device or '(system default input)'}")
    if not device:
        warnings.append("AUDIO_DEVICE_INDEX not set; using system default input.")
    elif not device.lstrip("-").isdigit():
        issues.append("AUDIO_DEVICE_INDEX must be an integer")

    print(f"    SPEECH_REGION = {env_pairs.get('SPEECH_REGION') or '(from auth server)'}")
    return issues, warnings


def _check_signing_env(env_pairs: Dict[str, str]) -> List[str]:
    _print_section("3. Token signing identity (optional)")
    present = [key for key in SIGNING_KEYS if env_pairs.get(key)]
    if not present:
        print("  [--] No OCI_* keys in .env; --issue-token will read config/config.txt.")
        return []
    warnings: List[str] = []
    for key in SIGNING_KEYS:
        print(f"  [{'OK' if env_pairs.get(key) else '!!'}] {key}")
    if len(present) != len(SIGNING_KEYS):
        warnings.append("OCI signing keys only partially set; the config file fallback will be used.")
    key_path = env_pairs.get("OCI_PRIVATE_KEY_PATH")
    if key_path and not Path(key_path).expanduser().exists():
        warnings.append(f"Private key not found at {key_path}")
    return warnings


def run_environment_check() -> bool:
    """Print the readiness report; returns True when listening can start."""

    print(f"Python {sys.version.split()[0]} ({sys.executable})")
    missing = _missing_packages()
    env_path = Path(".env")
    env_pairs = _read_env_pairs(env_path)
    issues, warnings = _check_session_env(env_path, env_pairs)
    warnings += _check_signing_env(env_pairs)
    if missing:
        issues.insert(0, f"Missing packages: {', '.join(missing)}")

    _print_section("Summary")
    for warn in warnings:
        print(f"  - {warn}")
    if issues:
        print("  [!!] Not ready yet. Address the following:")
        for idx, issue in enumerate(issues, 1):
            print(f"    {idx}. {issue}")
        print("\n  -> Re-run `speech-session --check-environment` afterwards.")
        return False
    print("  [OK] Ready to listen.")
    return True
