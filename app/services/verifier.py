"""
Signed Payload Verification
===========================

Verifier collaborators for JWS-signed notification payloads.

The contract is fail-closed: ``verify`` either returns the verified
claims or raises ``SignatureVerificationError``. There is no "unverified
but accepted" path.
"""

import json
from typing import Any, Protocol, Sequence

from jose import jws
from jose.exceptions import JOSEError


class SignatureVerificationError(Exception):
    """Signature missing, malformed or not trusted."""


class SignatureVerifier(Protocol):
    def verify(self, token: str) -> dict[str, Any]:
        """Return the verified claims of ``token`` or raise ``SignatureVerificationError``."""
        ...


class JoseSignatureVerifier:
    """
    Verifies compact JWS tokens against a configured key using python-jose.

    Args:
        key: PEM public key (or shared secret for HMAC algorithms)
        algorithms: Accepted ``alg`` header values
    """

    def __init__(self, key: str, algorithms: Sequence[str] = ("ES256",)):
        self.key = key
        self.algorithms = list(algorithms)

    def verify(self, token: str) -> dict[str, Any]:
        if not self.key:
            raise SignatureVerificationError("no signing key configured")
        if not isinstance(token, str) or token.count(".") != 2:
            raise SignatureVerificationError("not a compact JWS token")

        try:
            payload = jws.verify(token, self.key, algorithms=self.algorithms)
        except JOSEError as exc:
            raise SignatureVerificationError(str(exc)) from exc

        try:
            claims = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as exc:
            raise SignatureVerificationError("signed payload is not JSON") from exc

        if not isinstance(claims, dict):
            raise SignatureVerificationError("signed payload is not a JSON object")
        return claims
