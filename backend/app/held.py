"""Parked ("held") sales the cashier can recall later on the same terminal."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from .local_store import LocalStore
from .notifications import json_log
from .offline_queue import CartItem
from .validation import PaymentType

HELD_STORAGE_KEY = "pos_held_transactions"


class HeldTransaction(BaseModel):
    id: str
    cart: list[CartItem]
    customer: Optional[dict] = None
    payment_type: PaymentType = "cash"
    payment_amount: Decimal = Decimal("0")
    transfer_reference: Optional[str] = None
    held_at: datetime
    note: Optional[str] = None


class HeldTransactionStore:
    def __init__(self, store: LocalStore):
        self._store = store
        self._held: list[HeldTransaction] = []
        for rec in store.read_json(HELD_STORAGE_KEY, default=[]) or []:
            try:
                self._held.append(HeldTransaction.model_validate(rec))
            except Exception as ex:
                json_log("error", "held.record_invalid", error=str(ex))
                continue

    def _save(self) -> None:
        self._store.write_json(HELD_STORAGE_KEY, [h.model_dump(mode="json") for h in self._held])

    @property
    def held(self) -> list[HeldTransaction]:
        return list(self._held)

    @property
    def held_count(self) -> int:
        return len(self._held)

    def hold(
        self,
        cart: list[CartItem],
        customer: Optional[dict] = None,
        payment_type: str = "cash",
        payment_amount: Decimal = Decimal("0"),
        transfer_reference: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Optional[HeldTransaction]:
        if not cart:
            return None
        now = datetime.now(timezone.utc)
        held_id = f"HOLD-{int(now.timestamp() * 1000)}"
        # Two holds in the same millisecond would otherwise collide.
        while any(h.id == held_id for h in self._held):
            held_id = f"{held_id}-1"
        h = HeldTransaction(
            id=held_id,
            cart=cart,
            customer=customer,
            payment_type=payment_type,
            payment_amount=payment_amount,
            transfer_reference=transfer_reference,
            held_at=now,
            note=note,
        )
        self._held.append(h)
        self._save()
        return h

    def recall(self, held_id: str) -> Optional[HeldTransaction]:
        h = next((x for x in self._held if x.id == held_id), None)
        if h is not None:
            self._held = [x for x in self._held if x.id != held_id]
            self._save()
        return h

    def delete(self, held_id: str) -> None:
        self._held = [x for x in self._held if x.id != held_id]
        self._save()

    def update_note(self, held_id: str, note: str) -> Optional[HeldTransaction]:
        h = next((x for x in self._held if x.id == held_id), None)
        if h is None:
            return None
        h.note = note
        self._save()
        return h
