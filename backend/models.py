import uuid
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)
from sqlalchemy.sql import func
from database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class Event(Base):
    __tablename__ = "events"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, index=True)
    venue = Column(String, nullable=True)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    discount_budget = Column(Integer, nullable=True)  # minor units, None = unlimited
    discount_spent = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Pass(Base):
    __tablename__ = "passes"
    __table_args__ = (
        CheckConstraint("sold <= capacity", name="ck_pass_sold_within_capacity"),
        CheckConstraint("sold >= 0", name="ck_pass_sold_non_negative"),
    )

    id = Column(String, primary_key=True, default=new_id)
    event_id = Column(String, ForeignKey("events.id"), index=True, nullable=False)
    name = Column(String)  # General, VIP, ...
    unit_price = Column(Integer, nullable=False)  # minor units
    capacity = Column(Integer, nullable=False)
    sold = Column(Integer, default=0, nullable=False)


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id = Column(String, primary_key=True, default=new_id)
    code = Column(String, unique=True, index=True, nullable=False)  # stored normalized
    kind = Column(String, nullable=False)  # influencer, admin_promo, student_promo
    is_active = Column(Boolean, default=True, nullable=False)
    scope_event_id = Column(String, ForeignKey("events.id"), nullable=True, index=True)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    minimum_amount = Column(Integer, nullable=True)
    max_usage = Column(Integer, nullable=True)
    current_usage = Column(Integer, default=0, nullable=False)
    # variant columns
    owner_id = Column(String, nullable=True)  # influencer
    percent_off = Column(Integer, nullable=True)  # influencer, admin_promo, student_promo
    fixed_off = Column(Integer, nullable=True)  # admin_promo
    maximum_discount = Column(Integer, nullable=True)  # admin_promo with percent_off
    requires_document_verification = Column(Boolean, nullable=True)  # student_promo
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class StudentVerification(Base):
    __tablename__ = "student_verifications"

    id = Column(String, primary_key=True, default=new_id)
    student_email = Column(String, index=True, nullable=False)
    student_name = Column(String, nullable=True)
    institution_name = Column(String, nullable=True)
    document_url = Column(String, nullable=True)
    status = Column(String, default="pending", nullable=False)  # pending, approved, rejected
    verified_by = Column(String, nullable=True)
    notes = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True, default=new_id)
    event_id = Column(String, ForeignKey("events.id"), index=True, nullable=False)
    pass_id = Column(String, ForeignKey("passes.id"), nullable=False)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    original_amount = Column(Integer, nullable=False)
    discount_amount = Column(Integer, default=0, nullable=False)
    final_amount = Column(Integer, nullable=False)
    status = Column(String, default="pending", nullable=False)  # pending, confirmed, cancelled
    applied_discounts = Column(JSON, default=list, nullable=False)
    payment_reference = Column(String, unique=True, nullable=True)
    ticket_issued_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    confirmed_at = Column(DateTime(timezone=True), nullable=True)


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (UniqueConstraint("booking_id", name="uq_attendance_booking"),)

    id = Column(String, primary_key=True, default=new_id)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False)
    event_id = Column(String, ForeignKey("events.id"), index=True, nullable=False)
    check_in_time = Column(DateTime(timezone=True), nullable=False)
    scanned_by_guard_id = Column(String, nullable=True)
    guard_name = Column(String, nullable=True)
    location = Column(String, nullable=True)
    reported_scan_time = Column(DateTime(timezone=True), nullable=True)
    quantity_admitted = Column(Integer, nullable=False)


class Referral(Base):
    __tablename__ = "referrals"

    id = Column(String, primary_key=True, default=new_id)
    owner_id = Column(String, index=True, nullable=False)
    code = Column(String, nullable=False)
    booking_id = Column(String, ForeignKey("bookings.id"), unique=True, nullable=False)
    commission_amount = Column(Integer, nullable=False)
    status = Column(String, default="pending", nullable=False)  # pending, paid, cancelled
    created_at = Column(DateTime(timezone=True), server_default=func.now())
