"""Credential handling: client-side token cache and server-side request signing."""

from .credentials import Credential, CredentialProvider
from .issuer import RealtimeTokenIssuer
from .signer import RequestSigner, SigningRequest

__all__ = [
    "Credential",
    "CredentialProvider",
    "RealtimeTokenIssuer",
    "RequestSigner",
    "SigningRequest",
]
