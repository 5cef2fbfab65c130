from datetime import timedelta

import pytest

import schemas
from discounts import DiscountResolver, normalize_code
from errors import DiscountIneligible, DiscountNotFound, IneligibleReason, InvalidDiscountCode
from fakes import NOW


@pytest.fixture
def resolver(repo, clock):
    return DiscountResolver(repo, clock=clock)


def reason_of(excinfo):
    return excinfo.value.reason


def test_lookup_is_case_insensitive(repo, resolver):
    repo.put_code(schemas.InfluencerCode(code="ASHA10", owner_id="inf-1", percent_off=10))
    resolved = resolver.resolve("  asha10 ", "evt-a", 1000)
    assert resolved.amount_off == 100
    assert resolved.discount_class == schemas.DiscountClass.INFLUENCER
    assert resolved.applied().owner_id == "inf-1"


def test_unknown_code(resolver):
    with pytest.raises(DiscountNotFound):
        resolver.resolve("NOPE", "evt-a", 1000)


@pytest.mark.parametrize("code", ["", "   ", "!!!", "X" * 51])
def test_malformed_code(code):
    with pytest.raises(InvalidDiscountCode):
        normalize_code(code)


def test_inactive_code(repo, resolver):
    repo.put_code(schemas.AdminPromoCode(code="FLAT50", fixed_off=50, is_active=False))
    with pytest.raises(DiscountIneligible) as excinfo:
        resolver.resolve("FLAT50", "evt-a", 1000)
    assert reason_of(excinfo) == IneligibleReason.INACTIVE


def test_expired_and_not_yet_valid(repo, resolver):
    repo.put_code(schemas.AdminPromoCode(code="OLD", fixed_off=50, valid_until=NOW - timedelta(days=1)))
    repo.put_code(schemas.AdminPromoCode(code="SOON", fixed_off=50, valid_from=NOW + timedelta(days=1)))
    with pytest.raises(DiscountIneligible) as excinfo:
        resolver.resolve("OLD", "evt-a", 1000)
    assert reason_of(excinfo) == IneligibleReason.EXPIRED
    with pytest.raises(DiscountIneligible) as excinfo:
        resolver.resolve("SOON", "evt-a", 1000)
    assert reason_of(excinfo) == IneligibleReason.NOT_YET_VALID


def test_usage_limit(repo, resolver):
    repo.put_code(schemas.AdminPromoCode(code="FIRST10", fixed_off=50, max_usage=10, current_usage=10))
    with pytest.raises(DiscountIneligible) as excinfo:
        resolver.resolve("FIRST10", "evt-a", 1000)
    assert reason_of(excinfo) == IneligibleReason.USAGE_LIMIT_REACHED


def test_minimum_amount(repo, resolver):
    repo.put_code(schemas.AdminPromoCode(code="BIG", fixed_off=50, minimum_amount=2000))
    with pytest.raises(DiscountIneligible) as excinfo:
        resolver.resolve("BIG", "evt-a", 1000)
    assert reason_of(excinfo) == IneligibleReason.MINIMUM_NOT_MET


def test_event_scope(repo, resolver):
    repo.put_code(schemas.InfluencerCode(code="HOLI", owner_id="inf-1", percent_off=10, scope_event_id="evt-a"))
    assert resolver.resolve("HOLI", "evt-a", 1000).amount_off == 100
    with pytest.raises(DiscountIneligible) as excinfo:
        resolver.resolve("HOLI", "evt-b", 1000)
    assert reason_of(excinfo) == IneligibleReason.WRONG_EVENT


def test_fixed_amount_capped_at_order(repo, resolver):
    repo.put_code(schemas.AdminPromoCode(code="FLAT5000", fixed_off=5000))
    assert resolver.resolve("FLAT5000", "evt-a", 1000).amount_off == 1000


def test_percent_promo_capped_by_maximum(repo, resolver):
    repo.put_code(schemas.AdminPromoCode(code="HALF", percent_off=50, maximum_discount=200))
    assert resolver.resolve("HALF", "evt-a", 1000).amount_off == 200


def test_percent_rounds_down(repo, resolver):
    repo.put_code(schemas.InfluencerCode(code="ODD", owner_id="inf-1", percent_off=15))
    assert resolver.resolve("ODD", "evt-a", 333).amount_off == 49


def test_student_code_needs_approved_verification(repo, resolver):
    repo.put_code(schemas.StudentPromoCode(code="STUDENT15", percent_off=15))
    with pytest.raises(DiscountIneligible) as excinfo:
        resolver.resolve("STUDENT15", "evt-a", 1000, customer_email="asha@example.com")
    assert reason_of(excinfo) == IneligibleReason.NEEDS_VERIFICATION

    repo.verifications["asha@example.com"] = schemas.StudentVerification(
        id="sv-1", student_email="asha@example.com", status="rejected"
    )
    with pytest.raises(DiscountIneligible) as excinfo:
        resolver.resolve("STUDENT15", "evt-a", 1000, customer_email="Asha@Example.com")
    assert reason_of(excinfo) == IneligibleReason.VERIFICATION_REJECTED

    repo.verifications["asha@example.com"] = schemas.StudentVerification(
        id="sv-1", student_email="asha@example.com", status="approved"
    )
    assert resolver.resolve("STUDENT15", "evt-a", 1000, customer_email="asha@example.com").amount_off == 150


def test_event_discount_budget(repo, resolver):
    repo.events["evt-a"] = repo.events["evt-a"].model_copy(update={"discount_budget": 120, "discount_spent": 100})
    repo.put_code(schemas.AdminPromoCode(code="FLAT50", fixed_off=50))
    with pytest.raises(DiscountIneligible) as excinfo:
        resolver.resolve("FLAT50", "evt-a", 1000)
    assert reason_of(excinfo) == IneligibleReason.DISCOUNT_BUDGET_EXCEEDED


def test_admin_promo_needs_exactly_one_amount():
    with pytest.raises(ValueError):
        schemas.AdminPromoCode(code="BAD")
    with pytest.raises(ValueError):
        schemas.AdminPromoCode(code="BAD", percent_off=10, fixed_off=50)
