import hashlib
import hmac
import json
import secrets
from datetime import datetime
from typing import Protocol

from pydantic import ValidationError

import schemas
from errors import InvalidScanPayload

LEGACY_SALT = "797events"
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class TicketSigner(Protocol):
    def sign(self, booking_id: str, event_id: str, customer_email: str) -> str: ...

    def verify(self, booking_id: str, event_id: str, customer_email: str, token: str) -> bool: ...


def _message(booking_id: str, event_id: str, customer_email: str) -> bytes:
    return json.dumps([booking_id, event_id, customer_email], separators=(",", ":")).encode("utf-8")


class HmacTicketSigner:
    """HMAC-SHA256 over (booking, event, email) with a server-held key."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("ticket signing key must not be empty")
        self._secret = secret.encode("utf-8")

    def sign(self, booking_id: str, event_id: str, customer_email: str) -> str:
        payload = _message(booking_id, event_id, customer_email)
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def verify(self, booking_id: str, event_id: str, customer_email: str, token: str) -> bool:
        if not token:
            return False
        return secrets.compare_digest(self.sign(booking_id, event_id, customer_email), token)


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


class ChecksumTicketSigner:
    """The 32-bit rolling checksum printed on tickets of the previous system.

    Not a secret-keyed signature: anyone who knows the formula can produce a
    valid token. Only for honouring tickets that were issued with it.
    """

    def __init__(self, salt: str = LEGACY_SALT):
        self.salt = salt

    def sign(self, booking_id: str, event_id: str, customer_email: str) -> str:
        data = f"{booking_id}-{event_id}-{customer_email}-{self.salt}"
        units = data.encode("utf-16-le")
        h = 0
        for i in range(0, len(units), 2):
            h = ((h << 5) - h + int.from_bytes(units[i:i + 2], "little")) & 0xFFFFFFFF
        if h >= 0x80000000:
            h -= 0x100000000
        return _to_base36(abs(h))

    def verify(self, booking_id: str, event_id: str, customer_email: str, token: str) -> bool:
        if not token:
            return False
        return secrets.compare_digest(self.sign(booking_id, event_id, customer_email), token)


def build_signer(kind: str, secret: str) -> TicketSigner:
    if kind == "hmac":
        return HmacTicketSigner(secret)
    if kind == "checksum":
        return ChecksumTicketSigner()
    raise ValueError(f"Unknown ticket signer {kind!r}")


def issue_payload(signer: TicketSigner, booking: schemas.Booking, issued_at: datetime) -> schemas.TicketPayload:
    return schemas.TicketPayload(
        booking_id=booking.id,
        event_id=booking.event_id,
        issued_at=issued_at,
        signature=signer.sign(booking.id, booking.event_id, booking.customer_email),
    )


def encode_payload(payload: schemas.TicketPayload) -> str:
    return payload.model_dump_json()


def decode_payload(data: str) -> schemas.TicketPayload:
    try:
        return schemas.TicketPayload.model_validate_json(data)
    except ValidationError as exc:
        raise InvalidScanPayload("Unreadable ticket payload") from exc
