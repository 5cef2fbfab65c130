"""Combines a pass price with resolved discounts into a payable amount.

Pure functions over integer minor units. At most one influencer-class and
one promo-class discount may apply to an order.
"""
from typing import Iterable, Optional

from errors import DuplicateDiscountClass
from schemas import DiscountClass, PricingResult, ResolvedDiscount


def compute(
    unit_price: int,
    quantity: int,
    influencer_discount: Optional[ResolvedDiscount] = None,
    promo_discount: Optional[ResolvedDiscount] = None,
) -> PricingResult:
    if unit_price < 0 or quantity < 0:
        raise ValueError("unit_price and quantity must be non-negative")
    if influencer_discount is not None and influencer_discount.discount_class != DiscountClass.INFLUENCER:
        raise DuplicateDiscountClass(
            f"{influencer_discount.discount.code} is a promo code, not an influencer code"
        )
    if promo_discount is not None and promo_discount.discount_class != DiscountClass.PROMO:
        raise DuplicateDiscountClass(
            f"{promo_discount.discount.code} is an influencer code, not a promo code"
        )

    original_amount = unit_price * quantity
    applied = [d.applied() for d in (influencer_discount, promo_discount) if d is not None]
    discount_amount = sum(d.amount for d in applied)
    return PricingResult(
        original_amount=original_amount,
        discount_amount=discount_amount,
        final_amount=max(0, original_amount - discount_amount),
        applied_codes=applied,
    )


def compute_with(unit_price: int, quantity: int, discounts: Iterable[ResolvedDiscount]) -> PricingResult:
    """Sort ``discounts`` into their classes, rejecting a second code of a class."""
    slots = {}
    for discount in discounts:
        taken = slots.get(discount.discount_class)
        if taken is not None:
            raise DuplicateDiscountClass(
                f"Only one {discount.discount_class.value} code may be applied "
                f"({taken.discount.code} already applied, got {discount.discount.code})"
            )
        slots[discount.discount_class] = discount
    return compute(
        unit_price,
        quantity,
        influencer_discount=slots.get(DiscountClass.INFLUENCER),
        promo_discount=slots.get(DiscountClass.PROMO),
    )
