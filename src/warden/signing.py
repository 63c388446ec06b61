"""HMAC-SHA256 signing key derived from the authentication token."""

from __future__ import annotations

import hashlib
import hmac


class SigningKey:
    """Key material for signing and validating inbound requests.

    Instances are immutable; a token change produces a new instance.
    """

    __slots__ = ("_secret",)

    def __init__(self, token: str) -> None:
        self._secret = token.encode("utf-8")

    def sign(self, payload: bytes) -> str:
        """Return the hex HMAC of *payload*."""
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def verify(self, payload: bytes, signature: str) -> bool:
        """Constant-time check of *signature* against *payload*."""
        return hmac.compare_digest(self.sign(payload), signature)

    def fingerprint(self) -> str:
        """Short, non-reversible identifier of the key, safe to log."""
        return hashlib.sha256(b"warden-key:" + self._secret).hexdigest()[:16]

    def __repr__(self) -> str:
        return f"SigningKey(fingerprint={self.fingerprint()!r})"
