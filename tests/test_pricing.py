import pytest

import pricing
import schemas
from errors import DuplicateDiscountClass


def influencer(amount_off, code="ASHA10"):
    return schemas.ResolvedDiscount(
        discount=schemas.InfluencerCode(code=code, owner_id="inf-1", percent_off=10),
        amount_off=amount_off,
    )


def admin_promo(amount_off, code="FLAT50"):
    return schemas.ResolvedDiscount(
        discount=schemas.AdminPromoCode(code=code, fixed_off=amount_off),
        amount_off=amount_off,
    )


def student_promo(amount_off, code="STUDENT15"):
    return schemas.ResolvedDiscount(
        discount=schemas.StudentPromoCode(code=code, percent_off=15),
        amount_off=amount_off,
    )


def test_influencer_code_only():
    result = pricing.compute(500, 2, influencer_discount=influencer(100))
    assert result.original_amount == 1000
    assert result.discount_amount == 100
    assert result.final_amount == 900
    assert [d.code for d in result.applied_codes] == ["ASHA10"]


def test_influencer_and_admin_promo_stack():
    result = pricing.compute(500, 2, influencer_discount=influencer(100), promo_discount=admin_promo(50))
    assert result.discount_amount == 150
    assert result.final_amount == 850
    assert {d.discount_class for d in result.applied_codes} == {
        schemas.DiscountClass.INFLUENCER,
        schemas.DiscountClass.PROMO,
    }


def test_compute_is_repeatable():
    first = pricing.compute(750, 3, influencer(225), student_promo(337))
    second = pricing.compute(750, 3, influencer(225), student_promo(337))
    assert first == second


@pytest.mark.parametrize(
    "unit_price,quantity,infl,promo",
    [
        (0, 0, None, None),
        (0, 5, 10, 10),
        (100, 1, 100, 100),
        (100, 1, None, 5000),
        (1, 3, 2, 2),
    ],
)
def test_final_amount_never_negative(unit_price, quantity, infl, promo):
    result = pricing.compute(
        unit_price,
        quantity,
        influencer(infl) if infl is not None else None,
        admin_promo(promo) if promo is not None else None,
    )
    assert result.final_amount >= 0
    assert result.final_amount == max(0, unit_price * quantity - result.discount_amount)


def test_two_promo_codes_rejected():
    with pytest.raises(DuplicateDiscountClass):
        pricing.compute_with(500, 2, [admin_promo(50), student_promo(150)])


def test_two_influencer_codes_rejected():
    with pytest.raises(DuplicateDiscountClass):
        pricing.compute_with(500, 2, [influencer(100), influencer(100, code="RAVI10")])


def test_one_code_of_each_class_accepted():
    result = pricing.compute_with(500, 2, [admin_promo(50), influencer(100)])
    assert result.discount_amount == 150
    assert result.final_amount == 850


def test_promo_in_influencer_slot_rejected():
    with pytest.raises(DuplicateDiscountClass):
        pricing.compute(500, 2, influencer_discount=student_promo(150))


def test_negative_inputs_rejected():
    with pytest.raises(ValueError):
        pricing.compute(-1, 2)
    with pytest.raises(ValueError):
        pricing.compute(100, -2)
