from datetime import datetime, timedelta, timezone

from order_lifecycle.models import VoucherRedemption
from order_lifecycle.vouchers import consume_voucher, validate_voucher

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_valid_code_is_matched_case_insensitively(db, make_code):
    make_code(code="SAVE10", type="percent", value=10)

    check = validate_voucher(db, "  save10 ", subtotal=1000, now=NOW)

    assert check.valid
    assert check.to_dict() == {"valid": True, "discount": {"code": "SAVE10", "type": "percent", "value": 10.0}}


def test_unknown_and_blank_codes(db):
    assert validate_voucher(db, "NOPE").reason == "not_found"
    assert validate_voucher(db, "").to_dict() == {"valid": False, "reason": "not_found"}


def test_inactive_code(db, make_code):
    make_code(active=False)
    assert validate_voucher(db, "SAVE10", now=NOW).reason == "inactive"


def test_validity_window(db, make_code):
    make_code(code="LATER", starts_at=NOW + timedelta(days=1))
    make_code(code="OLD", expires_at=NOW - timedelta(seconds=1))

    assert validate_voucher(db, "LATER", now=NOW).reason == "not_started"
    assert validate_voucher(db, "OLD", now=NOW).reason == "expired"


def test_minimum_subtotal_is_enforced_only_when_subtotal_given(db, make_code):
    make_code(min_subtotal=500)

    assert validate_voucher(db, "SAVE10", subtotal=499.99, now=NOW).reason == "min_subtotal_not_met"
    assert validate_voucher(db, "SAVE10", subtotal=500, now=NOW).valid
    assert validate_voucher(db, "SAVE10", now=NOW).valid


def test_used_up_code_is_rejected(db, make_code):
    make_code(max_uses=3, used_count=3)
    assert validate_voucher(db, "SAVE10", now=NOW).reason == "usage_limit_reached"


def test_consumption_is_counted_once_per_checkout(db, make_code):
    code = make_code(max_uses=5)

    assert consume_voucher(db, code.id, "checkout-1") is True
    assert consume_voucher(db, code.id, "checkout-1") is False

    db.refresh(code)
    assert code.used_count == 1
    assert db.query(VoucherRedemption).count() == 1


def test_consumption_never_passes_the_cap(db, make_code):
    code = make_code(max_uses=1)

    assert consume_voucher(db, code.id, "checkout-1") is True
    assert consume_voucher(db, code.id, "checkout-2") is False

    db.refresh(code)
    assert code.used_count == 1
    assert db.query(VoucherRedemption).filter_by(checkout_id="checkout-2").count() == 0


def test_unlimited_code(db, make_code):
    code = make_code(max_uses=None)
    for n in range(3):
        assert consume_voucher(db, code.id, f"checkout-{n}")
    db.refresh(code)
    assert code.used_count == 3
