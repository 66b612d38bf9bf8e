"""HTTP request signing for OCI API calls (draft-cavage style signatures)."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from email.utils import formatdate
from typing import Dict, Optional, Sequence, Tuple, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ..errors import ConfigError

REQUEST_TARGET = "(request-target)"
SIGNABLE_HEADERS = frozenset({REQUEST_TARGET, "host", "date"})


@dataclass(frozen=True)
class SigningRequest:
    """One outbound request to sign."""

    host: str
    path: str
    method: str
    date: str
    headers: Sequence[str] = (REQUEST_TARGET, "host", "date")


class RequestSigner:
    """Builds the ``Authorization: Signature ...`` header for OCI requests.

    Header order and the ``(request-target)`` pseudo-header are part of the
    wire contract; the upstream service answers 401 if either differs.
    """

    def __init__(
        self,
        tenancy: str,
        user: str,
        fingerprint: str,
        private_key_pem: Union[str, bytes],
        passphrase: Optional[str] = None,
    ) -> None:
        self.tenancy = tenancy
        self.user = user
        self.fingerprint = fingerprint
        data = private_key_pem.encode("utf-8") if isinstance(private_key_pem, str) else private_key_pem
        password = passphrase.encode("utf-8") if passphrase else None
        try:
            key = serialization.load_pem_private_key(data, password=password)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise ConfigError(f"Private key could not be loaded: {exc}") from exc
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ConfigError("Private key must be an RSA key.")
        self._private_key = key

    @property
    def key_id(self) -> str:
        return f"{self.tenancy}/{self.user}/{self.fingerprint}"

    @staticmethod
    def signing_string(request: SigningRequest) -> Tuple[Sequence[str], str]:
        """Return the sorted header names and the newline-joined signing string."""

        names = sorted({name.lower() for name in request.headers})
        unknown = [name for name in names if name not in SIGNABLE_HEADERS]
        if unknown:
            raise ValueError(f"Unsupported headers to sign: {', '.join(unknown)}")

        values = {
            REQUEST_TARGET: f"{request.method.lower()} {request.path}",
            "host": request.host,
            "date": request.date,
        }
        lines = [f"{name}: {values[name]}" for name in names]
        return names, "\n".join(lines)

    def sign(self, request: SigningRequest) -> str:
        names, text = self.signing_string(request)
        signature = self._private_key.sign(text.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        encoded = base64.b64encode(signature).decode("ascii")
        return (
            f'Signature version="1",keyId="{self.key_id}",algorithm="rsa-sha256",'
            f'headers="{" ".join(names)}",signature="{encoded}"'
        )

    def signed_headers(
        self, method: str, host: str, path: str, date: Optional[str] = None
    ) -> Dict[str, str]:
        """Headers to attach to an outbound request, including ``authorization``."""

        date = date or formatdate(usegmt=True)
        authorization = self.sign(SigningRequest(host=host, path=path, method=method, date=date))
        return {"date": date, "host": host, "authorization": authorization}
