"""Record store consulted by the ticketing core.

The core only ever talks to a ``TicketingRepository``; ``SqlAlchemyRepository``
is the production implementation on top of a SQLAlchemy session.
"""
import logging
from datetime import datetime
from functools import wraps
from typing import List, Optional, Protocol, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    NoResultFound,
    OperationalError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import Session

import models
import schemas
from errors import (
    AttendanceConflict,
    BookingStateError,
    DiscountIneligible,
    IneligibleReason,
    PassUnavailable,
    TransientError,
)

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (OperationalError, PoolTimeoutError, DisconnectionError, InterfaceError)

_DISCOUNT_VARIANTS = {
    "influencer": schemas.InfluencerCode,
    "admin_promo": schemas.AdminPromoCode,
    "student_promo": schemas.StudentPromoCode,
}


class TicketingRepository(Protocol):
    def get_event(self, event_id: str) -> Optional[schemas.Event]: ...

    def get_pass(self, pass_id: str) -> Optional[schemas.Pass]: ...

    def get_booking(self, booking_id: str) -> Optional[schemas.Booking]: ...

    def get_discount_code(self, code: str) -> Optional[schemas.DiscountCode]: ...

    def get_student_verification(self, email: str) -> Optional[schemas.StudentVerification]: ...

    def add_booking(self, booking: schemas.Booking) -> schemas.Booking: ...

    def confirm_booking(
        self,
        booking_id: str,
        payment_reference: str,
        issued_at: datetime,
        referral: Optional[schemas.Referral] = None,
    ) -> schemas.Booking: ...

    def cancel_booking(self, booking_id: str) -> schemas.Booking: ...

    def insert_attendance_if_absent(
        self, record: schemas.AttendanceRecord
    ) -> Tuple[schemas.AttendanceRecord, bool]:
        """Store ``record`` unless one exists for its booking.

        Returns the stored record and whether this call created it. Must be a
        single atomic insert-if-absent in the backing store.
        """
        ...


def store_call(fn):
    """Surface timeouts and connection failures as ``TransientError``."""

    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except _TRANSIENT_ERRORS as exc:
            self.db.rollback()
            logger.error("store unavailable during %s: %s", fn.__name__, exc)
            raise TransientError(f"store unavailable during {fn.__name__}") from exc

    return wrapper


def to_discount_code(row: models.DiscountCode) -> schemas.DiscountCode:
    return _DISCOUNT_VARIANTS[row.kind].model_validate(row)


class SqlAlchemyRepository:
    def __init__(self, db: Session):
        self.db = db

    # ------------- reads -------------

    @store_call
    def get_event(self, event_id: str) -> Optional[schemas.Event]:
        row = self.db.get(models.Event, event_id)
        return schemas.Event.model_validate(row) if row else None

    @store_call
    def get_pass(self, pass_id: str) -> Optional[schemas.Pass]:
        row = self.db.get(models.Pass, pass_id)
        return schemas.Pass.model_validate(row) if row else None

    @store_call
    def get_booking(self, booking_id: str) -> Optional[schemas.Booking]:
        row = self.db.get(models.Booking, booking_id)
        return schemas.Booking.model_validate(row) if row else None

    @store_call
    def get_discount_code(self, code: str) -> Optional[schemas.DiscountCode]:
        row = (
            self.db.query(models.DiscountCode)
            .filter(func.upper(models.DiscountCode.code) == code.upper())
            .first()
        )
        return to_discount_code(row) if row else None

    @store_call
    def get_student_verification(self, email: str) -> Optional[schemas.StudentVerification]:
        row = (
            self.db.query(models.StudentVerification)
            .filter(func.lower(models.StudentVerification.student_email) == email.strip().lower())
            .order_by(models.StudentVerification.created_at.desc())
            .first()
        )
        return schemas.StudentVerification.model_validate(row) if row else None

    @store_call
    def list_attendance(self, event_id: str) -> List[schemas.AttendanceRecord]:
        rows = (
            self.db.query(models.AttendanceRecord)
            .filter(models.AttendanceRecord.event_id == event_id)
            .order_by(models.AttendanceRecord.check_in_time.asc())
            .all()
        )
        return [schemas.AttendanceRecord.model_validate(row) for row in rows]

    @store_call
    def list_bookings(self, event_id: str) -> List[schemas.Booking]:
        rows = (
            self.db.query(models.Booking)
            .filter(models.Booking.event_id == event_id)
            .order_by(models.Booking.created_at.asc())
            .all()
        )
        return [schemas.Booking.model_validate(row) for row in rows]

    @store_call
    def count_confirmed_bookings(self, event_id: str) -> int:
        return (
            self.db.query(models.Booking)
            .filter(
                models.Booking.event_id == event_id,
                models.Booking.status == schemas.BookingStatus.CONFIRMED.value,
            )
            .count()
        )

    @store_call
    def list_referrals(self, owner_id: str) -> List[schemas.Referral]:
        rows = (
            self.db.query(models.Referral)
            .filter(models.Referral.owner_id == owner_id)
            .order_by(models.Referral.created_at.desc())
            .all()
        )
        return [schemas.Referral.model_validate(row) for row in rows]

    # ------------- writes -------------

    @store_call
    def add_booking(self, booking: schemas.Booking) -> schemas.Booking:
        row = models.Booking(
            **booking.model_dump(exclude={"applied_discounts", "created_at"}, mode="python"),
            applied_discounts=[d.model_dump(mode="json") for d in booking.applied_discounts],
        )
        row.status = booking.status.value
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return schemas.Booking.model_validate(row)

    @store_call
    def confirm_booking(
        self,
        booking_id: str,
        payment_reference: str,
        issued_at: datetime,
        referral: Optional[schemas.Referral] = None,
    ) -> schemas.Booking:
        """Pending -> Confirmed, with the pass, code and budget counters, in one transaction."""
        booking = self.db.get(models.Booking, booking_id)
        if booking is None:
            raise BookingStateError(f"Booking {booking_id!r} not found")
        try:
            flipped = self.db.execute(
                update(models.Booking)
                .where(
                    models.Booking.id == booking_id,
                    models.Booking.status == schemas.BookingStatus.PENDING.value,
                )
                .values(
                    status=schemas.BookingStatus.CONFIRMED.value,
                    payment_reference=payment_reference,
                    ticket_issued_at=issued_at,
                    confirmed_at=issued_at,
                )
            ).rowcount
            if flipped != 1:
                raise BookingStateError(f"Booking {booking_id!r} is not pending")

            reserved = self.db.execute(
                update(models.Pass)
                .where(
                    models.Pass.id == booking.pass_id,
                    models.Pass.sold + booking.quantity <= models.Pass.capacity,
                )
                .values(sold=models.Pass.sold + booking.quantity)
            ).rowcount
            if reserved != 1:
                raise PassUnavailable(f"Pass {booking.pass_id!r} has no remaining capacity")

            applied_codes = booking.applied_discounts or []
            for applied in applied_codes:
                used = self.db.execute(
                    update(models.DiscountCode)
                    .where(
                        models.DiscountCode.code == applied["code"],
                        or_(
                            models.DiscountCode.max_usage.is_(None),
                            models.DiscountCode.current_usage < models.DiscountCode.max_usage,
                        ),
                    )
                    .values(current_usage=models.DiscountCode.current_usage + 1)
                ).rowcount
                if used != 1:
                    raise DiscountIneligible(
                        applied["code"],
                        IneligibleReason.USAGE_LIMIT_REACHED,
                        "Discount code usage limit reached",
                    )

            total_discount = sum(applied["amount"] for applied in applied_codes)
            if total_discount:
                spent = self.db.execute(
                    update(models.Event)
                    .where(
                        models.Event.id == booking.event_id,
                        or_(
                            models.Event.discount_budget.is_(None),
                            models.Event.discount_spent + total_discount <= models.Event.discount_budget,
                        ),
                    )
                    .values(discount_spent=models.Event.discount_spent + total_discount)
                ).rowcount
                if spent != 1:
                    raise DiscountIneligible(
                        applied_codes[-1]["code"],
                        IneligibleReason.DISCOUNT_BUDGET_EXCEEDED,
                        "Event discount budget is exhausted",
                    )

            if referral is not None:
                self.db.add(models.Referral(**referral.model_dump(exclude={"created_at"})))

            self.db.commit()
        except (BookingStateError, PassUnavailable, DiscountIneligible):
            self.db.rollback()
            raise
        except IntegrityError as exc:
            self.db.rollback()
            raise BookingStateError(f"Payment reference {payment_reference!r} already used") from exc
        self.db.refresh(booking)
        return schemas.Booking.model_validate(booking)

    @store_call
    def cancel_booking(self, booking_id: str) -> schemas.Booking:
        cancelled = self.db.execute(
            update(models.Booking)
            .where(
                models.Booking.id == booking_id,
                models.Booking.status == schemas.BookingStatus.PENDING.value,
            )
            .values(status=schemas.BookingStatus.CANCELLED.value)
        ).rowcount
        if cancelled != 1:
            self.db.rollback()
            raise BookingStateError(f"Booking {booking_id!r} is not pending")
        self.db.commit()
        return self.get_booking(booking_id)

    @store_call
    def insert_attendance_if_absent(
        self, record: schemas.AttendanceRecord
    ) -> Tuple[schemas.AttendanceRecord, bool]:
        row = models.AttendanceRecord(**record.model_dump(exclude={"id"}))
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError as exc:
            # uq_attendance_booking: another scan already admitted this booking
            self.db.rollback()
            try:
                existing = (
                    self.db.query(models.AttendanceRecord)
                    .filter(models.AttendanceRecord.booking_id == record.booking_id)
                    .one()
                )
            except NoResultFound:
                logger.error("attendance insert for booking %s rejected: %s", record.booking_id, exc.orig)
                raise AttendanceConflict(f"Attendance for booking {record.booking_id!r} was not stored") from exc
            return schemas.AttendanceRecord.model_validate(existing), False
        self.db.refresh(row)
        return schemas.AttendanceRecord.model_validate(row), True

    @store_call
    def add_discount_code(self, discount: schemas.DiscountCode) -> schemas.DiscountCode:
        row = models.DiscountCode(**discount.model_dump())
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return to_discount_code(row)

    @store_call
    def deactivate_discount_code(self, code: str) -> Optional[schemas.DiscountCode]:
        row = self.db.query(models.DiscountCode).filter(models.DiscountCode.code == code).first()
        if row is None:
            return None
        row.is_active = False
        self.db.commit()
        self.db.refresh(row)
        return to_discount_code(row)

    @store_call
    def list_discount_codes(self, active_only: bool = False) -> List[schemas.DiscountCode]:
        query = self.db.query(models.DiscountCode)
        if active_only:
            query = query.filter(models.DiscountCode.is_active.is_(True))
        return [to_discount_code(row) for row in query.order_by(models.DiscountCode.created_at.desc())]
