from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel, computed_field, model_validator


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class DiscountClass(str, Enum):
    INFLUENCER = "influencer"
    PROMO = "promo"


class VerificationOutcome(str, Enum):
    ADMITTED = "admitted"
    ALREADY_ADMITTED = "already_admitted"
    NOT_FOUND = "not_found"
    NOT_CONFIRMED = "not_confirmed"
    EVENT_MISMATCH = "event_mismatch"
    INVALID_SIGNATURE = "invalid_signature"
    TRANSIENT_ERROR = "transient_error"


# ------------- Events & passes -------------

class EventBase(BaseModel):
    name: str
    venue: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    discount_budget: Optional[int] = Field(default=None, ge=0)


class EventCreate(EventBase):
    pass


class Event(EventBase):
    id: str
    discount_spent: int = 0

    model_config = ConfigDict(from_attributes=True)


class PassCreate(BaseModel):
    name: str
    unit_price: int = Field(ge=0)
    capacity: int = Field(ge=0)


class Pass(PassCreate):
    id: str
    event_id: str
    sold: int = 0

    model_config = ConfigDict(from_attributes=True)


# ------------- Discount codes -------------

class DiscountCodeBase(BaseModel):
    code: str
    is_active: bool = True
    scope_event_id: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    minimum_amount: Optional[int] = Field(default=None, ge=0)
    max_usage: Optional[int] = Field(default=None, ge=0)
    current_usage: int = 0

    model_config = ConfigDict(from_attributes=True)


class InfluencerCode(DiscountCodeBase):
    kind: Literal["influencer"] = "influencer"
    owner_id: str
    percent_off: int = Field(ge=0, le=100)

    @property
    def discount_class(self) -> DiscountClass:
        return DiscountClass.INFLUENCER


class AdminPromoCode(DiscountCodeBase):
    kind: Literal["admin_promo"] = "admin_promo"
    percent_off: Optional[int] = Field(default=None, ge=0, le=100)
    fixed_off: Optional[int] = Field(default=None, ge=0)
    maximum_discount: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def exactly_one_amount(self):
        if (self.percent_off is None) == (self.fixed_off is None):
            raise ValueError("admin promo needs exactly one of percent_off or fixed_off")
        return self

    @property
    def discount_class(self) -> DiscountClass:
        return DiscountClass.PROMO


class StudentPromoCode(DiscountCodeBase):
    kind: Literal["student_promo"] = "student_promo"
    percent_off: int = Field(ge=0, le=100)
    requires_document_verification: bool = True

    @property
    def discount_class(self) -> DiscountClass:
        return DiscountClass.PROMO


DiscountCode = Annotated[
    Union[InfluencerCode, AdminPromoCode, StudentPromoCode],
    Field(discriminator="kind"),
]


class DiscountCodeRecord(RootModel[DiscountCode]):
    """Any discount code variant, told apart by its ``kind``."""


class AppliedDiscount(BaseModel):
    code: str
    kind: str
    discount_class: DiscountClass
    amount: int
    owner_id: Optional[str] = None


class ResolvedDiscount(BaseModel):
    """A code that passed eligibility, with the amount it takes off the order."""

    model_config = ConfigDict(frozen=True)

    discount: DiscountCode
    amount_off: int = Field(ge=0)

    @property
    def discount_class(self) -> DiscountClass:
        return self.discount.discount_class

    def applied(self) -> AppliedDiscount:
        return AppliedDiscount(
            code=self.discount.code,
            kind=self.discount.kind,
            discount_class=self.discount_class,
            amount=self.amount_off,
            owner_id=getattr(self.discount, "owner_id", None),
        )


class PricingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_amount: int
    discount_amount: int
    final_amount: int
    applied_codes: List[AppliedDiscount] = []


class DiscountValidateRequest(BaseModel):
    code: str
    event_id: str
    order_amount: int = Field(gt=0, le=100_000_000)
    customer_email: Optional[str] = None


class DiscountValidateResponse(BaseModel):
    is_valid: bool
    code: str
    kind: Optional[str] = None
    discount_class: Optional[DiscountClass] = None
    discount_amount: int = 0
    owner_id: Optional[str] = None
    reason: Optional[str] = None
    message: str


class PricingQuoteRequest(BaseModel):
    event_id: str
    pass_id: str
    quantity: int = Field(ge=1, le=100)
    influencer_code: Optional[str] = None
    promo_code: Optional[str] = None
    customer_email: Optional[str] = None


# ------------- Student verification -------------

class StudentVerificationCreate(BaseModel):
    student_email: str
    student_name: Optional[str] = None
    institution_name: Optional[str] = None
    document_url: Optional[str] = None


class StudentVerificationReview(BaseModel):
    status: Literal["approved", "rejected"]
    notes: Optional[str] = None


class StudentVerification(StudentVerificationCreate):
    id: str
    status: str
    verified_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ------------- Bookings & tickets -------------

class BookingCreate(BaseModel):
    event_id: str
    pass_id: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    quantity: int = Field(ge=1, le=100)
    influencer_code: Optional[str] = None
    promo_code: Optional[str] = None


class Booking(BaseModel):
    id: str
    event_id: str
    pass_id: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    quantity: int
    original_amount: int
    discount_amount: int = 0
    final_amount: int
    status: BookingStatus
    applied_discounts: List[AppliedDiscount] = []
    payment_reference: Optional[str] = None
    ticket_issued_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PaymentWebhookRequest(BaseModel):
    booking_id: str
    status: Literal["captured", "failed"]
    transaction_ref: str


class TicketPayload(BaseModel):
    booking_id: str
    event_id: str
    issued_at: datetime
    signature: str


class TicketResponse(BaseModel):
    payload: TicketPayload
    qr_data: str


class PaymentWebhookResponse(BaseModel):
    status: str
    booking: Booking
    ticket: Optional[TicketResponse] = None


class Referral(BaseModel):
    id: str
    owner_id: str
    code: str
    booking_id: str
    commission_amount: int
    status: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReferralSummary(BaseModel):
    owner_id: str
    total_referrals: int
    total_commission: int
    pending_commission: int
    referrals: List[Referral]


# ------------- Gate -------------

class ScanRequest(BaseModel):
    booking_id: Optional[str] = None
    qr_data: Optional[str] = None
    event_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    signature: Optional[str] = None
    scanned_by: Optional[str] = None
    guard_name: Optional[str] = None
    scan_location: Optional[str] = None
    scan_time: Optional[datetime] = None


class AttendanceRecord(BaseModel):
    id: Optional[str] = None
    booking_id: str
    event_id: str
    check_in_time: datetime
    scanned_by_guard_id: Optional[str] = None
    guard_name: Optional[str] = None
    location: Optional[str] = None
    reported_scan_time: Optional[datetime] = None
    quantity_admitted: int

    model_config = ConfigDict(from_attributes=True)


class BookingSummary(BaseModel):
    id: str
    event_id: str
    event_name: Optional[str] = None
    pass_id: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    quantity: int
    final_amount: int


class VerificationResult(BaseModel):
    outcome: VerificationOutcome
    message: str
    booking: Optional[BookingSummary] = None
    check_in_time: Optional[datetime] = None

    @computed_field
    @property
    def indicator(self) -> str:
        if self.outcome == VerificationOutcome.ADMITTED:
            return "green"
        if self.outcome == VerificationOutcome.ALREADY_ADMITTED:
            return "yellow"
        return "red"

    @computed_field
    @property
    def retryable(self) -> bool:
        return self.outcome == VerificationOutcome.TRANSIENT_ERROR


class AttendanceStats(BaseModel):
    event_id: str
    confirmed_bookings: int
    admitted_bookings: int
    admitted_heads: int
    attendance_rate: float


# ------------- Auth -------------

class AdminLoginRequest(BaseModel):
    username: str
    password: str


class AdminLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class ScannerLoginRequest(BaseModel):
    username: str
    password: str


class ScannerLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
