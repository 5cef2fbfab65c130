"""Gate-side check-in.

A booking moves from never-scanned to admitted exactly once. Every other
outcome is a read-only answer to the guard. The admission itself relies on
the store's atomic insert-if-absent, so independent processes scanning the
same ticket at different gates still admit it only once.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import schemas
from errors import InvalidScanPayload, TransientError
from repository import TicketingRepository
from schemas import VerificationOutcome as Outcome
from ticket_signing import TicketSigner, decode_payload

logger = logging.getLogger(__name__)

_MESSAGES = {
    Outcome.ADMITTED: "Ticket verified, entry granted",
    Outcome.ALREADY_ADMITTED: "Ticket already used for entry",
    Outcome.NOT_FOUND: "Ticket not found in system",
    Outcome.NOT_CONFIRMED: "Ticket not confirmed or cancelled",
    Outcome.EVENT_MISMATCH: "Ticket not valid for this event",
    Outcome.INVALID_SIGNATURE: "Invalid ticket signature",
    Outcome.TRANSIENT_ERROR: "Verification temporarily unavailable, scan again",
}


def summarize(booking: schemas.Booking, event: Optional[schemas.Event]) -> schemas.BookingSummary:
    return schemas.BookingSummary(
        id=booking.id,
        event_id=booking.event_id,
        event_name=event.name if event else None,
        pass_id=booking.pass_id,
        customer_name=booking.customer_name,
        customer_email=booking.customer_email,
        customer_phone=booking.customer_phone,
        quantity=booking.quantity,
        final_amount=booking.final_amount,
    )


def _result(outcome: Outcome, booking=None, check_in_time=None) -> schemas.VerificationResult:
    return schemas.VerificationResult(
        outcome=outcome,
        message=_MESSAGES[outcome],
        booking=booking,
        check_in_time=check_in_time,
    )


class CheckInVerifier:
    def __init__(
        self,
        repo: TicketingRepository,
        signer: TicketSigner,
        require_signature: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repo = repo
        self.signer = signer
        self.require_signature = require_signature
        self.clock = clock

    def verify(self, scan: schemas.ScanRequest, guard_id: Optional[str] = None) -> schemas.VerificationResult:
        """Run one scan through the admission gates.

        Raises ``InvalidScanPayload`` before touching the store when the scan
        carries no usable booking reference. Store failures come back as the
        ``transient_error`` outcome, never as an admission.
        """
        booking_id, event_id, signature = self._reference(scan)
        try:
            return self._verify(scan, booking_id, event_id, signature, guard_id)
        except TransientError:
            logger.error("scan outcome=%s booking=%s", Outcome.TRANSIENT_ERROR.value, booking_id)
            return _result(Outcome.TRANSIENT_ERROR)

    def _reference(self, scan: schemas.ScanRequest):
        booking_id, event_id, signature = scan.booking_id, scan.event_id, scan.signature
        if scan.qr_data:
            payload = decode_payload(scan.qr_data)
            if booking_id and booking_id != payload.booking_id:
                raise InvalidScanPayload("Booking reference does not match ticket payload")
            booking_id = payload.booking_id
            signature = signature or payload.signature
        if not booking_id or not booking_id.strip():
            raise InvalidScanPayload("Missing booking reference")
        return booking_id.strip(), event_id, signature

    def _verify(self, scan, booking_id, event_id, signature, guard_id) -> schemas.VerificationResult:
        booking = self.repo.get_booking(booking_id)
        if booking is None:
            logger.warning("scan outcome=%s booking=%s", Outcome.NOT_FOUND.value, booking_id)
            return _result(Outcome.NOT_FOUND)

        # rejections answer from the booking alone; the event name is read only for admissions
        summary = summarize(booking, None)

        if booking.status != schemas.BookingStatus.CONFIRMED:
            logger.warning(
                "scan outcome=%s booking=%s status=%s",
                Outcome.NOT_CONFIRMED.value, booking_id, booking.status.value,
            )
            return _result(Outcome.NOT_CONFIRMED, summary)

        if event_id and event_id != booking.event_id:
            logger.warning(
                "scan outcome=%s booking=%s scanned_for=%s booked_for=%s",
                Outcome.EVENT_MISMATCH.value, booking_id, event_id, booking.event_id,
            )
            return _result(Outcome.EVENT_MISMATCH, summary)

        if signature or self.require_signature:
            if not self.signer.verify(booking.id, booking.event_id, booking.customer_email, signature or ""):
                logger.warning(
                    "scan outcome=%s booking=%s possible forged ticket",
                    Outcome.INVALID_SIGNATURE.value, booking_id,
                )
                return _result(Outcome.INVALID_SIGNATURE, summary)

        summary = summarize(booking, self.repo.get_event(booking.event_id))
        record = schemas.AttendanceRecord(
            booking_id=booking.id,
            event_id=booking.event_id,
            check_in_time=self.clock(),
            scanned_by_guard_id=guard_id or scan.scanned_by,
            guard_name=scan.guard_name,
            location=scan.scan_location,
            reported_scan_time=scan.scan_time,
            quantity_admitted=booking.quantity,
        )
        stored, created = self.repo.insert_attendance_if_absent(record)
        if not created:
            logger.info(
                "scan outcome=%s booking=%s first_check_in=%s",
                Outcome.ALREADY_ADMITTED.value, booking_id, stored.check_in_time.isoformat(),
            )
            return _result(Outcome.ALREADY_ADMITTED, summary, stored.check_in_time)

        logger.info("scan outcome=%s booking=%s guard=%s", Outcome.ADMITTED.value, booking_id, record.scanned_by_guard_id)
        return _result(Outcome.ADMITTED, summary, stored.check_in_time)
