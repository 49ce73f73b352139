"""
HMAC-SHA256 signing for permit payloads.
"""

import hashlib
import hmac
from typing import Union


class SignatureService:
    """Signs and verifies messages with a process-wide secret key.

    The key is injected once at startup; there is no key rotation.
    """

    def __init__(self, secret: Union[str, bytes]):
        if not secret:
            raise ValueError("Signing secret must not be empty")
        self._key = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)

    @staticmethod
    def permit_message(application_id: str, timestamp: str) -> bytes:
        """Canonical signed string for a permit: ``applicationId:timestamp``"""
        return f"{application_id}:{timestamp}".encode("utf-8")

    def sign(self, message: bytes) -> str:
        """Return the lowercase hex HMAC-SHA256 digest of message"""
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def verify(self, message: bytes, digest: str) -> bool:
        """Constant-time check of digest against a freshly computed one"""
        if not isinstance(digest, str):
            return False
        expected = self.sign(message)
        return hmac.compare_digest(expected.encode("ascii"), digest.encode("utf-8", "replace"))
