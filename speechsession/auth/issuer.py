"""Signed realtime session-token issuance against the OCI speech API."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..config import OCISigningConfig
from ..errors import AuthError
from .signer import RequestSigner

TOKEN_PATH = "/20220101/realtimeSessionTokens"


def speech_api_host(region: str) -> str:
    return f"speech.aiservice.{region}.oci.oraclecloud.com"


def explain_status(status: int) -> str:
    """Human readable hint for common upstream failures."""

    if status == 401:
        return "Authentication failed. Check the private key, fingerprint and user/tenancy OCIDs."
    if status == 403:
        return "Not permitted to access this resource. Check the IAM policies."
    if status == 404:
        return (
            "Not authorized or not found: check the region spelling, the speech service "
            "permissions, the compartment and the API signing key."
        )
    return "Unexpected response from the speech API."


class RealtimeTokenIssuer:
    """Request single-use realtime session tokens on behalf of clients."""

    def __init__(
        self,
        config: OCISigningConfig,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.config = config
        self.host = speech_api_host(config.region)
        self._base_url = base_url or f"https://{self.host}"
        self._session = session
        self._owns_session = session is None
        self._timeout_seconds = timeout_seconds
        self._signer = RequestSigner(
            tenancy=config.tenancy,
            user=config.user,
            fingerprint=config.fingerprint,
            private_key_pem=config.private_key,
        )

    async def __aenter__(self) -> "RealtimeTokenIssuer":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.close()

    async def close(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
            self._session = None

    async def issue(self) -> Dict[str, Any]:
        """Return ``{token, sessionId, compartmentId, ...}`` from the upstream API."""

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds)
            )
            self._owns_session = True

        signed = self._signer.signed_headers("POST", self.host, TOKEN_PATH)
        body = json.dumps({"compartmentId": self.config.compartment_id})
        headers = {
            "Date": signed["date"],
            "Authorization": signed["authorization"],
            "Content-Type": "application/json",
        }
        logging.debug("Requesting realtime session token from %s%s", self.host, TOKEN_PATH)
        try:
            async with self._session.post(
                f"{self._base_url}{TOKEN_PATH}", data=body, headers=headers
            ) as resp:
                text = await resp.text()
                if resp.status < 200 or resp.status >= 300:
                    hint = explain_status(resp.status)
                    logging.error("Token issuance failed (%s): %s. %s", resp.status, text, hint)
                    raise AuthError(f"Token issuance failed: {hint}", status=resp.status, body=text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise AuthError(f"Network error during token issuance: {exc}") from exc

        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise AuthError("Failed to parse token response", status=resp.status, body=text) from exc
        if not isinstance(payload, dict) or not payload.get("token"):
            raise AuthError("Token response missing token", status=resp.status, body=text)
        return payload
