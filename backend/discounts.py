"""Discount code resolution.

Each submitted code is looked up and checked on its own; combining codes is
the pricing engine's job. Nothing here is cached: a code's activation state
can change between two attempts of the same customer.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Optional

import schemas
from errors import (
    DiscountIneligible,
    DiscountNotFound,
    IneligibleReason,
    InvalidDiscountCode,
)
from repository import TicketingRepository

logger = logging.getLogger(__name__)

MAX_CODE_LENGTH = 50
_NON_CODE_CHARS = re.compile(r"[^A-Z0-9]")


def normalize_code(code: str) -> str:
    if not isinstance(code, str) or len(code) > MAX_CODE_LENGTH:
        raise InvalidDiscountCode("Invalid discount code format")
    normalized = _NON_CODE_CHARS.sub("", code.strip().upper())
    if not normalized:
        raise InvalidDiscountCode("Invalid discount code format")
    return normalized


def percent_of(amount: int, percent: int) -> int:
    # minor units, rounded down
    return amount * percent // 100


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DiscountResolver:
    def __init__(
        self,
        repo: TicketingRepository,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repo = repo
        self.clock = clock

    def resolve(
        self,
        code: str,
        event_id: str,
        order_amount: int,
        customer_email: Optional[str] = None,
    ) -> schemas.ResolvedDiscount:
        normalized = normalize_code(code)
        discount = self.repo.get_discount_code(normalized)
        if discount is None:
            raise DiscountNotFound(normalized)

        try:
            self._check_common(discount, event_id, order_amount)
            if isinstance(discount, schemas.StudentPromoCode):
                self._check_student(discount, customer_email)
            amount_off = self._amount_off(discount, order_amount)
            self._check_budget(discount, event_id, amount_off)
        except DiscountIneligible as exc:
            logger.warning(
                "discount %s ineligible for event %s: %s", normalized, event_id, exc.reason.value
            )
            raise

        return schemas.ResolvedDiscount(discount=discount, amount_off=amount_off)

    def _check_common(self, discount, event_id: str, order_amount: int) -> None:
        code = discount.code
        if not discount.is_active:
            raise DiscountIneligible(code, IneligibleReason.INACTIVE, "Discount code is inactive")
        now = self.clock()
        if discount.valid_from is not None and _as_utc(discount.valid_from) > now:
            raise DiscountIneligible(code, IneligibleReason.NOT_YET_VALID, "Discount code is not yet valid")
        if discount.valid_until is not None and _as_utc(discount.valid_until) < now:
            raise DiscountIneligible(code, IneligibleReason.EXPIRED, "Discount code has expired")
        if discount.max_usage is not None and discount.current_usage >= discount.max_usage:
            raise DiscountIneligible(
                code, IneligibleReason.USAGE_LIMIT_REACHED, "Discount code usage limit reached"
            )
        if discount.minimum_amount and order_amount < discount.minimum_amount:
            raise DiscountIneligible(
                code,
                IneligibleReason.MINIMUM_NOT_MET,
                f"Minimum order amount is {discount.minimum_amount}",
            )
        if discount.scope_event_id is not None and discount.scope_event_id != event_id:
            raise DiscountIneligible(
                code, IneligibleReason.WRONG_EVENT, "Discount code is not valid for this event"
            )

    def _check_student(self, discount: schemas.StudentPromoCode, customer_email: Optional[str]) -> None:
        if not discount.requires_document_verification:
            return
        verification = self.repo.get_student_verification(customer_email) if customer_email else None
        if verification is None or verification.status == "pending":
            raise DiscountIneligible(
                discount.code,
                IneligibleReason.NEEDS_VERIFICATION,
                "Student ID verification is required before this code can be used",
            )
        if verification.status != "approved":
            raise DiscountIneligible(
                discount.code,
                IneligibleReason.VERIFICATION_REJECTED,
                "Student ID verification was rejected",
            )

    def _amount_off(self, discount, order_amount: int) -> int:
        if isinstance(discount, schemas.AdminPromoCode) and discount.fixed_off is not None:
            return min(discount.fixed_off, order_amount)
        amount = percent_of(order_amount, discount.percent_off)
        if isinstance(discount, schemas.AdminPromoCode) and discount.maximum_discount is not None:
            amount = min(amount, discount.maximum_discount)
        return amount

    def _check_budget(self, discount, event_id: str, amount_off: int) -> None:
        event = self.repo.get_event(event_id)
        if event is None or event.discount_budget is None:
            return
        if event.discount_spent + amount_off > event.discount_budget:
            raise DiscountIneligible(
                discount.code,
                IneligibleReason.DISCOUNT_BUDGET_EXCEEDED,
                "Event discount budget is exhausted",
            )
