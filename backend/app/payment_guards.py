from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException

from .cart import Cart

CREDIT_DUE_DAYS = 7


class CheckoutRejected(HTTPException):
    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(status_code=400, detail={"error": reason, "message": message})


@dataclass(frozen=True)
class CheckoutTotals:
    subtotal: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    change_amount: Decimal
    points_earned: int
    due_date: Optional[date]

    def to_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "discount_amount": self.discount_amount,
            "total_amount": self.total_amount,
            "change_amount": self.change_amount,
            "points_earned": self.points_earned,
            "due_date": self.due_date.isoformat() if self.due_date else None,
        }


def change_amount(payment_type: str, payment_amount: Decimal, total_amount: Decimal) -> Decimal:
    if payment_type != "cash":
        return Decimal("0")
    return max(Decimal("0"), Decimal(payment_amount) - Decimal(total_amount))


def credit_due_date(payment_type: str, committed_at: Optional[datetime] = None) -> Optional[date]:
    if payment_type != "credit":
        return None
    committed_at = committed_at or datetime.now(timezone.utc)
    return (committed_at + timedelta(days=CREDIT_DUE_DAYS)).date()


def compute_totals(
    cart: Cart,
    payment_type: str,
    payment_amount: Decimal,
    discount_amount: Decimal = Decimal("0"),
    has_customer: bool = False,
    committed_at: Optional[datetime] = None,
) -> CheckoutTotals:
    subtotal = cart.get_total_amount()
    discount = max(Decimal("0"), Decimal(discount_amount or 0))
    total = max(Decimal("0"), subtotal - discount)
    # Loyalty points only accrue to a known customer.
    points = cart.get_total_points_earned() if has_customer else 0
    return CheckoutTotals(
        subtotal=subtotal,
        discount_amount=discount,
        total_amount=total,
        change_amount=change_amount(payment_type, Decimal(payment_amount or 0), total),
        points_earned=points,
        due_date=credit_due_date(payment_type, committed_at),
    )


def assert_can_commit(
    cart: Cart,
    payment_type: str,
    payment_amount: Decimal,
    total_amount: Decimal,
    transfer_reference: Optional[str] = None,
) -> None:
    if cart.is_empty():
        raise CheckoutRejected("cart_empty", "cart is empty")
    if payment_type == "cash" and Decimal(payment_amount or 0) < Decimal(total_amount):
        raise CheckoutRejected(
            "underpayment",
            f"cash payment {payment_amount} is less than total {total_amount}",
        )
    if payment_type == "transfer" and not (transfer_reference or "").strip():
        raise CheckoutRejected("transfer_reference_required", "transfer reference is required")


def can_commit(
    cart: Cart,
    payment_type: str,
    payment_amount: Decimal,
    total_amount: Decimal,
    transfer_reference: Optional[str] = None,
) -> bool:
    try:
        assert_can_commit(cart, payment_type, payment_amount, total_amount, transfer_reference)
    except CheckoutRejected:
        return False
    return True
