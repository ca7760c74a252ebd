from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from backend.app.cart import Cart
from backend.app.payment_guards import (
    CheckoutRejected,
    assert_can_commit,
    can_commit,
    change_amount,
    compute_totals,
    credit_due_date,
)
from backend.app.pricing import Product


def _cart(total="50000", points=5):
    cart = Cart()
    cart.add_to_cart(
        Product(id="p-1", name="Gift box", selling_price=Decimal(total), current_stock=10, loyalty_points=points),
        1,
    )
    return cart


def test_exact_cash_payment_gives_no_change():
    totals = compute_totals(_cart(), "cash", Decimal("50000"))
    assert totals.total_amount == Decimal("50000")
    assert totals.change_amount == Decimal("0")
    assert can_commit(_cart(), "cash", Decimal("50000"), totals.total_amount) is True


def test_cash_underpayment_is_rejected():
    with pytest.raises(CheckoutRejected) as exc_info:
        assert_can_commit(_cart(), "cash", Decimal("20000"), Decimal("50000"))
    exc = exc_info.value
    assert exc.status_code == 400
    assert exc.reason == "underpayment"
    assert can_commit(_cart(), "cash", Decimal("20000"), Decimal("50000")) is False


def test_cash_overpayment_returns_change():
    assert change_amount("cash", Decimal("60000"), Decimal("50000")) == Decimal("10000")
    assert change_amount("credit", Decimal("60000"), Decimal("50000")) == Decimal("0")
    assert change_amount("transfer", Decimal("0"), Decimal("50000")) == Decimal("0")


def test_empty_cart_cannot_commit():
    with pytest.raises(CheckoutRejected) as exc_info:
        assert_can_commit(Cart(), "credit", Decimal("0"), Decimal("0"))
    assert exc_info.value.reason == "cart_empty"


@pytest.mark.parametrize("ref", [None, "", "   "])
def test_transfer_requires_reference(ref):
    with pytest.raises(CheckoutRejected) as exc_info:
        assert_can_commit(_cart(), "transfer", Decimal("0"), Decimal("50000"), transfer_reference=ref)
    assert exc_info.value.reason == "transfer_reference_required"


def test_transfer_and_credit_ignore_payment_amount():
    assert can_commit(_cart(), "transfer", Decimal("0"), Decimal("50000"), transfer_reference="BNK-1") is True
    assert can_commit(_cart(), "credit", Decimal("0"), Decimal("50000")) is True


def test_credit_due_date_is_seven_days_out():
    at = datetime(2024, 2, 26, 15, 0, tzinfo=timezone.utc)
    assert credit_due_date("credit", at) == date(2024, 3, 4)
    assert credit_due_date("cash", at) is None
    totals = compute_totals(_cart(), "credit", Decimal("0"), committed_at=at)
    assert totals.due_date == date(2024, 3, 4)
    assert totals.to_dict()["due_date"] == "2024-03-04"


def test_discount_is_clamped_at_zero_total_and_points_need_a_customer():
    totals = compute_totals(_cart(points=5), "cash", Decimal("0"), discount_amount=Decimal("70000"))
    assert totals.subtotal == Decimal("50000")
    assert totals.total_amount == Decimal("0")
    assert totals.points_earned == 0

    totals = compute_totals(_cart(points=5), "cash", Decimal("0"), has_customer=True)
    assert totals.points_earned == 5
