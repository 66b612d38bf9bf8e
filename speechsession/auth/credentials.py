"""Session credential retrieval from the auth proxy."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import aiohttp

from ..config import AuthConfig
from ..errors import AuthError


@dataclass(frozen=True)
class Credential:
    """A single-use realtime session token plus its metadata."""

    token: str
    session_id: str
    compartment_id: str
    issued_at: float
    expires_at: float
    region: Optional[str] = None

    def is_usable(self, now: float, margin: float = 0.0) -> bool:
        return now < self.expires_at - margin

    @property
    def redacted_token(self) -> str:
        return f"{self.token[:8]}..." if self.token else "<empty>"


class CredentialProvider:
    """Fetch, cache and invalidate realtime session credentials."""

    def __init__(
        self,
        config: AuthConfig,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._region: Optional[str] = config.region
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "CredentialProvider":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.close()

    async def close(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
            self._session = None

    @property
    def cached(self) -> Optional[Credential]:
        return self._credential

    async def get_token(self) -> Credential:
        """Return a usable credential, fetching a new one when needed."""

        credential = self._credential
        if credential is not None and credential.is_usable(self._clock(), self.config.refresh_margin_seconds):
            return credential

        async with self._lock:
            # Another caller may have refreshed while we waited for the lock.
            credential = self._credential
            if credential is not None and credential.is_usable(
                self._clock(), self.config.refresh_margin_seconds
            ):
                return credential

            payload = await self._get_json("/authenticate")
            token = payload.get("token")
            if not token or not isinstance(token, str):
                raise AuthError("No token received from authentication server", body=str(payload))
            region = await self.get_region()
            issued_at = self._clock()
            credential = Credential(
                token=token,
                session_id=str(payload.get("sessionId") or ""),
                compartment_id=str(payload.get("compartmentId") or ""),
                issued_at=issued_at,
                expires_at=issued_at + self.config.token_ttl_seconds,
                region=region,
            )
            self._credential = credential
            logging.info(
                "Obtained speech session credential %s (session=%s).",
                credential.redacted_token,
                credential.session_id or "?",
            )
            return credential

    def invalidate(self) -> None:
        """Drop the cached credential so the next ``get_token`` refetches."""

        if self._credential is not None:
            logging.debug("Invalidating credential %s.", self._credential.redacted_token)
        self._credential = None

    async def get_region(self) -> str:
        if self._region:
            return self._region
        payload = await self._get_json("/region")
        region = payload.get("region")
        if not region or not isinstance(region, str):
            raise AuthError("Region missing from authentication server response", body=str(payload))
        self._region = region
        return region

    async def check_health(self) -> Dict[str, Any]:
        """Pre-flight reachability check against ``GET /health``."""

        return await self._get_json("/health")

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _get_json(self, path: str) -> Dict[str, Any]:
        url = f"{self.config.server_url.rstrip('/')}{path}"
        session = self._ensure_session()
        try:
            async with session.get(url, headers={"Accept": "application/json"}) as resp:
                text = await resp.text()
                if resp.status < 200 or resp.status >= 300:
                    logging.error("Auth server %s failed (%s): %s", path, resp.status, text)
                    raise AuthError(f"Request to {path} failed", status=resp.status, body=text)
                try:
                    payload = await resp.json(content_type=None)
                except ValueError as exc:
                    raise AuthError(
                        f"Malformed response from {path}", status=resp.status, body=text
                    ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise AuthError(f"Network error calling {path}: {exc}") from exc

        if not isinstance(payload, dict):
            raise AuthError(f"Unexpected response from {path}", body=text)
        return payload
