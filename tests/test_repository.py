from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

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
from fakes import NOW
from repository import SqlAlchemyRepository


@pytest.fixture
def store(db):
    db.add(models.Event(id="evt-a", name="Holi Night", discount_spent=0))
    db.add(models.Pass(id="pass-a", event_id="evt-a", name="General", unit_price=500, capacity=3, sold=0))
    db.commit()
    return SqlAlchemyRepository(db)


def pending_booking(store, booking_id="bk-1", quantity=2, applied=()):
    return store.add_booking(
        schemas.Booking(
            id=booking_id,
            event_id="evt-a",
            pass_id="pass-a",
            customer_name="Asha Rao",
            customer_email="asha@example.com",
            quantity=quantity,
            original_amount=500 * quantity,
            discount_amount=sum(a.amount for a in applied),
            final_amount=500 * quantity - sum(a.amount for a in applied),
            status=schemas.BookingStatus.PENDING,
            applied_discounts=list(applied),
        )
    )


def attendance(booking_id, at):
    return schemas.AttendanceRecord(
        booking_id=booking_id,
        event_id="evt-a",
        check_in_time=at,
        scanned_by_guard_id="gate-1",
        quantity_admitted=2,
    )


def test_discount_code_variants_round_trip(store):
    store.add_discount_code(schemas.InfluencerCode(code="ASHA10", owner_id="inf-1", percent_off=10))
    store.add_discount_code(schemas.StudentPromoCode(code="STUDENT15", percent_off=15))
    assert isinstance(store.get_discount_code("asha10"), schemas.InfluencerCode)
    assert isinstance(store.get_discount_code("STUDENT15"), schemas.StudentPromoCode)
    assert store.get_discount_code("MISSING") is None
    assert store.deactivate_discount_code("ASHA10").is_active is False
    assert [d.code for d in store.list_discount_codes(active_only=True)] == ["STUDENT15"]


def test_attendance_insert_is_at_most_once(store):
    pending_booking(store)
    first, created = store.insert_attendance_if_absent(attendance("bk-1", NOW))
    again, created_again = store.insert_attendance_if_absent(attendance("bk-1", NOW + timedelta(minutes=5)))

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert again.check_in_time == first.check_in_time
    assert len(store.list_attendance("evt-a")) == 1


def test_confirm_updates_counters_in_one_go(store):
    store.add_discount_code(schemas.AdminPromoCode(code="FLAT50", fixed_off=50))
    applied = schemas.AppliedDiscount(
        code="FLAT50", kind="admin_promo", discount_class=schemas.DiscountClass.PROMO, amount=50
    )
    pending_booking(store, applied=[applied])
    referral = schemas.Referral(
        id="ref-1", owner_id="inf-1", code="ASHA10", booking_id="bk-1", commission_amount=100, status="pending"
    )

    confirmed = store.confirm_booking("bk-1", "pay_001", NOW, referral)

    assert confirmed.status == schemas.BookingStatus.CONFIRMED
    assert confirmed.payment_reference == "pay_001"
    assert store.get_pass("pass-a").sold == 2
    assert store.get_event("evt-a").discount_spent == 50
    assert store.get_discount_code("FLAT50").current_usage == 1
    assert [r.booking_id for r in store.list_referrals("inf-1")] == ["bk-1"]
    assert store.count_confirmed_bookings("evt-a") == 1


def test_confirm_only_from_pending(store):
    pending_booking(store)
    store.confirm_booking("bk-1", "pay_001", NOW)
    with pytest.raises(BookingStateError):
        store.confirm_booking("bk-1", "pay_002", NOW)


def test_confirm_respects_capacity(store):
    pending_booking(store, "bk-1", quantity=2)
    pending_booking(store, "bk-2", quantity=2)
    store.confirm_booking("bk-1", "pay_001", NOW)

    with pytest.raises(PassUnavailable):
        store.confirm_booking("bk-2", "pay_002", NOW)

    assert store.get_booking("bk-2").status == schemas.BookingStatus.PENDING
    assert store.get_pass("pass-a").sold == 2


def test_cancel_only_from_pending(store):
    pending_booking(store)
    assert store.cancel_booking("bk-1").status == schemas.BookingStatus.CANCELLED
    with pytest.raises(BookingStateError):
        store.cancel_booking("bk-1")


def test_connection_failure_becomes_transient(store, monkeypatch):
    def unavailable(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))

    monkeypatch.setattr(store.db, "get", unavailable)
    with pytest.raises(TransientError):
        store.get_booking("bk-1")


def test_confirm_refuses_code_past_its_usage_limit(store):
    store.add_discount_code(schemas.AdminPromoCode(code="ONCE", fixed_off=50, max_usage=1))
    applied = schemas.AppliedDiscount(
        code="ONCE", kind="admin_promo", discount_class=schemas.DiscountClass.PROMO, amount=50
    )
    pending_booking(store, "bk-1", quantity=1, applied=[applied])
    pending_booking(store, "bk-2", quantity=1, applied=[applied])
    store.confirm_booking("bk-1", "pay_001", NOW)

    with pytest.raises(DiscountIneligible) as excinfo:
        store.confirm_booking("bk-2", "pay_002", NOW)

    assert excinfo.value.reason == IneligibleReason.USAGE_LIMIT_REACHED
    assert store.get_discount_code("ONCE").current_usage == 1
    assert store.get_booking("bk-2").status == schemas.BookingStatus.PENDING
    assert store.get_pass("pass-a").sold == 1


def test_confirm_refuses_discount_past_event_budget(store):
    store.db.get(models.Event, "evt-a").discount_budget = 120
    store.db.commit()
    influencer = schemas.AppliedDiscount(
        code="ASHA10", kind="influencer", discount_class=schemas.DiscountClass.INFLUENCER, amount=100
    )
    promo = schemas.AppliedDiscount(
        code="FLAT50", kind="admin_promo", discount_class=schemas.DiscountClass.PROMO, amount=50
    )
    store.add_discount_code(schemas.InfluencerCode(code="ASHA10", owner_id="inf-1", percent_off=10))
    store.add_discount_code(schemas.AdminPromoCode(code="FLAT50", fixed_off=50))
    pending_booking(store, applied=[influencer, promo])

    with pytest.raises(DiscountIneligible) as excinfo:
        store.confirm_booking("bk-1", "pay_001", NOW)

    assert excinfo.value.reason == IneligibleReason.DISCOUNT_BUDGET_EXCEEDED
    assert store.get_event("evt-a").discount_spent == 0
    assert store.get_discount_code("ASHA10").current_usage == 0
    assert store.get_booking("bk-1").status == schemas.BookingStatus.PENDING


def test_attendance_insert_rejected_for_another_reason(store, monkeypatch):
    pending_booking(store)

    def rejected():
        raise IntegrityError("INSERT INTO attendance_records", {}, Exception("NOT NULL constraint failed"))

    monkeypatch.setattr(store.db, "commit", rejected)
    with pytest.raises(AttendanceConflict):
        store.insert_attendance_if_absent(attendance("bk-1", NOW))
    monkeypatch.undo()
    assert store.list_attendance("evt-a") == []
