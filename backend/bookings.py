import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import pricing
import schemas
from discounts import DiscountResolver, percent_of
from errors import (
    BookingNotFound,
    BookingStateError,
    DiscountIneligible,
    IneligibleReason,
    PassUnavailable,
)
from repository import TicketingRepository
from ticket_signing import TicketSigner, issue_payload

logger = logging.getLogger(__name__)

INFLUENCER_COMMISSION_PERCENT = 10


class BookingService:
    def __init__(
        self,
        repo: TicketingRepository,
        signer: TicketSigner,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repo = repo
        self.signer = signer
        self.clock = clock
        self.resolver = DiscountResolver(repo, clock=clock)

    def _pass_for(self, event_id: str, pass_id: str) -> schemas.Pass:
        ticket_pass = self.repo.get_pass(pass_id)
        if ticket_pass is None or ticket_pass.event_id != event_id:
            raise PassUnavailable("Pass not found for this event")
        return ticket_pass

    def quote(
        self,
        event_id: str,
        pass_id: str,
        quantity: int,
        influencer_code: Optional[str] = None,
        promo_code: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> schemas.PricingResult:
        ticket_pass = self._pass_for(event_id, pass_id)
        original_amount = ticket_pass.unit_price * quantity

        influencer = promo = None
        if influencer_code:
            influencer = self.resolver.resolve(influencer_code, event_id, original_amount, customer_email)
        if promo_code:
            promo = self.resolver.resolve(promo_code, event_id, original_amount, customer_email)
        self._check_combined_budget(event_id, [d for d in (influencer, promo) if d is not None])
        return pricing.compute(ticket_pass.unit_price, quantity, influencer, promo)

    def _check_combined_budget(self, event_id: str, discounts) -> None:
        # each code already fits on its own; together they must too
        if len(discounts) < 2:
            return
        event = self.repo.get_event(event_id)
        if event is None or event.discount_budget is None:
            return
        spent = event.discount_spent
        for discount in discounts:
            spent += discount.amount_off
            if spent > event.discount_budget:
                logger.warning(
                    "discount %s ineligible for event %s: %s",
                    discount.discount.code, event_id, IneligibleReason.DISCOUNT_BUDGET_EXCEEDED.value,
                )
                raise DiscountIneligible(
                    discount.discount.code,
                    IneligibleReason.DISCOUNT_BUDGET_EXCEEDED,
                    "Event discount budget is exhausted",
                )

    def create_booking(self, req: schemas.BookingCreate) -> schemas.Booking:
        ticket_pass = self._pass_for(req.event_id, req.pass_id)
        if ticket_pass.sold + req.quantity > ticket_pass.capacity:
            raise PassUnavailable(f"Only {ticket_pass.capacity - ticket_pass.sold} passes left")

        result = self.quote(
            req.event_id,
            req.pass_id,
            req.quantity,
            influencer_code=req.influencer_code,
            promo_code=req.promo_code,
            customer_email=req.customer_email,
        )
        booking = self.repo.add_booking(
            schemas.Booking(
                id=str(uuid.uuid4()),
                event_id=req.event_id,
                pass_id=req.pass_id,
                customer_name=req.customer_name,
                customer_email=req.customer_email,
                customer_phone=req.customer_phone,
                quantity=req.quantity,
                original_amount=result.original_amount,
                discount_amount=result.discount_amount,
                final_amount=result.final_amount,
                status=schemas.BookingStatus.PENDING,
                applied_discounts=result.applied_codes,
            )
        )
        logger.info("booking %s created pending, final_amount=%s", booking.id, booking.final_amount)
        return booking

    def _get(self, booking_id: str) -> schemas.Booking:
        booking = self.repo.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    def confirm_booking(self, booking_id: str, payment_reference: str) -> schemas.TicketPayload:
        """Mark a booking paid and issue its ticket payload.

        Repeating the call for an already confirmed booking returns the same
        payload; a cancelled booking cannot be confirmed.
        """
        booking = self._get(booking_id)
        if booking.status == schemas.BookingStatus.CONFIRMED:
            return self.ticket_payload(booking_id)
        if booking.status != schemas.BookingStatus.PENDING:
            raise BookingStateError(f"Booking {booking_id!r} is {booking.status.value}")

        referral = None
        influencer = next(
            (d for d in booking.applied_discounts if d.discount_class == schemas.DiscountClass.INFLUENCER),
            None,
        )
        if influencer is not None and influencer.owner_id:
            referral = schemas.Referral(
                id=str(uuid.uuid4()),
                owner_id=influencer.owner_id,
                code=influencer.code,
                booking_id=booking.id,
                commission_amount=percent_of(booking.original_amount, INFLUENCER_COMMISSION_PERCENT),
                status="pending",
            )

        try:
            confirmed = self.repo.confirm_booking(booking.id, payment_reference, self.clock(), referral)
        except BookingStateError:
            # a concurrent confirmation for the same booking won
            if self._get(booking_id).status == schemas.BookingStatus.CONFIRMED:
                return self.ticket_payload(booking_id)
            raise
        except DiscountIneligible as exc:
            logger.warning(
                "booking %s not confirmed, discount %s: %s", booking.id, exc.code, exc.reason.value
            )
            raise
        logger.info("booking %s confirmed, payment=%s", booking.id, payment_reference)
        return issue_payload(self.signer, confirmed, confirmed.ticket_issued_at)

    def cancel_booking(self, booking_id: str) -> schemas.Booking:
        booking = self._get(booking_id)
        if booking.status != schemas.BookingStatus.PENDING:
            raise BookingStateError(f"Booking {booking_id!r} is {booking.status.value}")
        cancelled = self.repo.cancel_booking(booking_id)
        logger.info("booking %s cancelled", booking_id)
        return cancelled

    def ticket_payload(self, booking_id: str) -> schemas.TicketPayload:
        booking = self._get(booking_id)
        if booking.status != schemas.BookingStatus.CONFIRMED or booking.ticket_issued_at is None:
            raise BookingStateError("Ticket is issued only for confirmed bookings")
        return issue_payload(self.signer, booking, booking.ticket_issued_at)
