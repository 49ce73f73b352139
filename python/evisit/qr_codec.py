"""
QR Permit Codec

Builds the signed permit payload carried in a QR image and verifies
payloads scanned at checkpoints.

Wire format (compact JSON):
    {"applicationId": "...", "timestamp": "2025-01-01T12:00:00.000Z", "signature": "<hex>"}

The signature is HMAC-SHA256 over ``applicationId:timestamp``. A payload
is accepted for at most ``max_age_seconds`` after its timestamp. That
bounds QR freshness only; whether the permit itself is valid on a given
day is decided from the application's validity window.
"""

import io
import json
import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_H

from evisit.clock import Clock, ensure_utc, utc_now
from evisit.errors import ErrorKind
from evisit.signing import SignatureService

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60
PAYLOAD_FIELDS = ("applicationId", "timestamp", "signature")


class VerifyFailure(str, Enum):
    """Reason a scanned payload was refused"""
    MALFORMED = "MALFORMED"
    BAD_SIGNATURE = "BAD_SIGNATURE"
    EXPIRED = "EXPIRED"

    @property
    def error_kind(self) -> ErrorKind:
        return {
            VerifyFailure.MALFORMED: ErrorKind.MALFORMED,
            VerifyFailure.BAD_SIGNATURE: ErrorKind.SIGNATURE_INVALID,
            VerifyFailure.EXPIRED: ErrorKind.EXPIRED,
        }[self]


FAILURE_MESSAGES = {
    VerifyFailure.MALFORMED: "Invalid QR code format",
    VerifyFailure.BAD_SIGNATURE: "Invalid QR code signature",
    VerifyFailure.EXPIRED: "QR code has expired (older than 24 hours)",
}


@dataclass
class IssuedPermit:
    """A freshly minted permit: raw payload plus its rendered image"""
    application_id: str
    timestamp: str
    signature: str
    payload: str
    image_bytes: bytes

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.image_bytes).decode("ascii")
        return f"data:image/png;base64,{encoded}"


@dataclass
class VerificationResult:
    """Outcome of parse_and_verify"""
    ok: bool
    application_id: Optional[str] = None
    failure: Optional[VerifyFailure] = None
    message: str = ""
    issued_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "application_id": self.application_id,
            "failure": self.failure.value if self.failure else None,
            "message": self.message,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
        }


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix"""
    return ensure_utc(moment).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; ``Z`` and naive values are UTC"""
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


class PermitCodec:
    """Issues and verifies signed permit payloads."""

    def __init__(
        self,
        signer: SignatureService,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        clock: Clock = utc_now,
        box_size: int = 10,
        border: int = 2
    ):
        self._signer = signer
        self._max_age = timedelta(seconds=max_age_seconds)
        self._clock = clock
        self._box_size = box_size
        self._border = border

    def build_payload(self, application_id: str, now: Optional[datetime] = None) -> Dict[str, str]:
        """Create the signed payload fields for application_id at now"""
        timestamp = format_timestamp(now or self._clock())
        signature = self._signer.sign(
            SignatureService.permit_message(application_id, timestamp)
        )
        return {
            "applicationId": application_id,
            "timestamp": timestamp,
            "signature": signature,
        }

    def issue(self, application_id: str, now: Optional[datetime] = None) -> IssuedPermit:
        """Mint a permit payload and render it as a PNG QR image"""
        fields = self.build_payload(application_id, now)
        payload = json.dumps(fields, separators=(",", ":"))
        logger.debug("Issued permit payload for application %s", application_id)
        return IssuedPermit(
            application_id=application_id,
            timestamp=fields["timestamp"],
            signature=fields["signature"],
            payload=payload,
            image_bytes=self.render(payload),
        )

    def render(self, payload: str) -> bytes:
        """Render a payload string into PNG bytes at error-correction level H"""
        qr = qrcode.QRCode(
            error_correction=ERROR_CORRECT_H,
            box_size=self._box_size,
            border=self._border,
        )
        qr.add_data(payload)
        qr.make(fit=True)
        image = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()

    def parse_and_verify(self, raw_payload: Any, now: Optional[datetime] = None) -> VerificationResult:
        """Decode a scanned payload and check its signature and freshness.

        Checks run in order: structure, signature, age. The first failing
        check decides the result. No side effects.
        """
        try:
            data = json.loads(raw_payload) if isinstance(raw_payload, (str, bytes)) else None
        except (ValueError, RecursionError):
            data = None

        if not isinstance(data, dict):
            return self._fail(VerifyFailure.MALFORMED)

        values = [data.get(name) for name in PAYLOAD_FIELDS]
        if not all(isinstance(value, str) and value for value in values):
            return self._fail(VerifyFailure.MALFORMED)
        application_id, timestamp, signature = values

        # UnicodeEncodeError (lone surrogates) is a ValueError
        try:
            issued_at = parse_timestamp(timestamp)
            message = SignatureService.permit_message(application_id, timestamp)
        except ValueError:
            return self._fail(VerifyFailure.MALFORMED)

        if not self._signer.verify(message, signature):
            return self._fail(VerifyFailure.BAD_SIGNATURE, application_id)

        now = ensure_utc(now or self._clock())
        if now - issued_at > self._max_age:
            return self._fail(VerifyFailure.EXPIRED, application_id, issued_at)

        return VerificationResult(ok=True, application_id=application_id, issued_at=issued_at)

    @staticmethod
    def _fail(
        failure: VerifyFailure,
        application_id: Optional[str] = None,
        issued_at: Optional[datetime] = None
    ) -> VerificationResult:
        return VerificationResult(
            ok=False,
            application_id=application_id,
            failure=failure,
            message=FAILURE_MESSAGES[failure],
            issued_at=issued_at,
        )
