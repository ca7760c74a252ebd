from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal, Optional

from pydantic import BeforeValidator, Field, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


def _blank_to_none(v):
    if v is None:
        return v
    s = str(v).strip()
    return s or None


# Canonical codes mirror the `transaction_type` enum in `backend/db/schema.sql`.
PaymentType = Annotated[Literal["cash", "credit", "transfer"], BeforeValidator(_to_lower_str)]

Money = Annotated[Decimal, Field(ge=0)]

# Free-text bank reference typed by the cashier; blank means "not provided".
TransferReference = Annotated[
    Optional[Annotated[str, StringConstraints(max_length=120)]],
    BeforeValidator(_blank_to_none),
]

ProductId = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1, max_length=64)]
