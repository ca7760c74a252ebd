"""
Offline sale queue and replay engine.

Sales committed while the backend is unreachable are snapshotted into the
terminal-local store (one JSON list under `pos_offline_transactions`) and
replayed one at a time when connectivity returns.

Replay of one sale is a short saga against the backend:

  1. insert the `transactions` row
  2. insert its `transaction_items`
  3. credit the customer's totals (points + spend)
  4. append the `point_transactions` ledger row

Completed steps are recorded per offline id in a separate ledger
(`pos_offline_sync_state`) so a retry resumes where the last attempt stopped
instead of inserting the sale twice. The snapshot itself is never rewritten
except to flip `synced`.

Retries are unlimited by default (every pass retries every pending sale).
A `RetryPolicy` with `max_attempts`/backoff turns repeated failures into a
delayed retry and, finally, a dead-lettered entry that only `requeue()`
brings back.
"""
from __future__ import annotations

import hashlib
import secrets
import string
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

import psycopg
from pydantic import BaseModel, Field

from .cart import CartLine
from .connectivity import ConnectivityObserver
from .local_store import LocalStore
from .notifications import Notifier, json_log
from .payment_guards import credit_due_date
from .validation import PaymentType

OFFLINE_STORAGE_KEY = "pos_offline_transactions"
SYNC_STATE_STORAGE_KEY = "pos_offline_sync_state"

STEP_TRANSACTION = "transaction"
STEP_ITEMS = "items"
STEP_CUSTOMER_TOTALS = "customer_totals"
STEP_POINT_LEDGER = "point_ledger"

_ID_ALPHABET = string.digits + string.ascii_lowercase


class CartItem(BaseModel):
    id: str
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    image_url: Optional[str] = None
    loyalty_points: int = 0
    price_variant: Optional[dict] = None

    @classmethod
    def from_line(cls, line: CartLine) -> "CartItem":
        tier = None
        if line.price_tier is not None:
            tier = {
                "id": line.price_tier.id,
                "name": line.price_tier.name,
                "price": str(line.price_tier.price),
                "minimum_quantity": line.price_tier.minimum_quantity,
            }
        return cls(
            id=line.product_id,
            product_id=line.product_id,
            name=line.name,
            quantity=line.quantity,
            unit_price=line.unit_price,
            total_price=line.total_price,
            image_url=line.image_url,
            loyalty_points=line.loyalty_points,
            price_variant=tier,
        )


class OfflineTransactionIn(BaseModel):
    transaction_number: str
    cart: list[CartItem]
    total_amount: Decimal
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    payment_type: PaymentType
    payment_amount: Decimal
    change_amount: Decimal = Decimal("0")
    transfer_reference: Optional[str] = None
    points_earned: int = 0
    cashier_id: Optional[str] = None
    created_at: datetime
    discount_amount: Decimal = Decimal("0")
    points_used: int = 0


class OfflineTransaction(OfflineTransactionIn):
    id: str
    synced: bool = False


class SyncState(BaseModel):
    attempts: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    remote_transaction_id: Optional[str] = None
    completed_steps: list[str] = Field(default_factory=list)
    dead_letter: bool = False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 0  # 0 = unlimited
    backoff_base_seconds: int = 0  # 0 = retry on every pass
    backoff_max_seconds: int = 300

    def next_attempt_at(self, attempts: int, txn_id: str, now: datetime) -> Optional[datetime]:
        if self.backoff_base_seconds <= 0:
            return None
        delay = min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** max(attempts - 1, 0)))
        # Deterministic per-transaction jitter so a batch does not retry in lockstep.
        digest = hashlib.sha1(f"{txn_id}:{attempts}".encode("utf-8")).hexdigest()
        jitter_window = max(1, min(30, delay // 5 or 1))
        delay = min(self.backoff_max_seconds, delay + (int(digest[:8], 16) % (jitter_window + 1)))
        return now + timedelta(seconds=delay)

    def exhausted(self, attempts: int) -> bool:
        return self.max_attempts > 0 and attempts >= self.max_attempts


@dataclass
class SyncSummary:
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    ran: bool = False
    interrupted: bool = False

    def to_dict(self) -> dict:
        return {
            "ran": self.ran,
            "synced": self.synced,
            "failed": self.failed,
            "skipped": self.skipped,
            "dead_lettered": self.dead_lettered,
            "interrupted": self.interrupted,
        }


def new_offline_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"offline_{int(now.timestamp() * 1000)}_{suffix}"


def transaction_row(txn: OfflineTransactionIn, from_offline: bool = True) -> dict:
    parts = []
    if txn.transfer_reference:
        parts.append(f"Transfer Ref: {txn.transfer_reference}")
    if from_offline:
        parts.append("(Synced from offline)")
    notes = " ".join(parts) or None
    return {
        "transaction_number": txn.transaction_number,
        "offline_id": (txn.id if from_offline and isinstance(txn, OfflineTransaction) else None),
        "total_amount": txn.total_amount,
        "discount_amount": txn.discount_amount,
        "points_used": txn.points_used,
        "cashier_id": txn.cashier_id,
        "customer_id": txn.customer_id,
        "payment_type": txn.payment_type,
        "payment_amount": txn.payment_amount,
        "change_amount": txn.change_amount,
        "is_credit": txn.payment_type == "credit",
        "points_earned": txn.points_earned,
        "due_date": credit_due_date(txn.payment_type, txn.created_at),
        "notes": notes,
        "created_at": txn.created_at,
    }


def transaction_item_rows(transaction_id: Optional[str], txn: OfflineTransactionIn) -> list[dict]:
    return [
        {
            "transaction_id": transaction_id,
            "product_id": it.product_id,
            "quantity": it.quantity,
            "unit_price": it.unit_price,
            "total_price": it.total_price,
        }
        for it in txn.cart
    ]


class OfflineQueue:
    def __init__(
        self,
        store: LocalStore,
        backend: Any,
        connectivity: ConnectivityObserver,
        notifier: Optional[Notifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._backend = backend
        self._connectivity = connectivity
        self._notifier = notifier or Notifier()
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._sync_lock = threading.Lock()
        self._syncing = False
        self._last_summary: Optional[SyncSummary] = None
        self._pending: list[OfflineTransaction] = self._load_pending()
        self._sync_state: dict[str, SyncState] = self._load_sync_state()
        self._unsubscribe: Optional[Callable[[], None]] = connectivity.subscribe(self._on_connectivity_change)

    # Lifecycle

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # Persistence

    def _load_pending(self) -> list[OfflineTransaction]:
        raw = self._store.read_json(OFFLINE_STORAGE_KEY, default=[])
        if not isinstance(raw, list):
            json_log("error", "offline_queue.load_failed", key=OFFLINE_STORAGE_KEY, error="not a list")
            return []
        out: list[OfflineTransaction] = []
        for rec in raw:
            try:
                txn = OfflineTransaction.model_validate(rec)
            except Exception as ex:
                json_log("error", "offline_queue.record_invalid", error=str(ex))
                continue
            if not txn.synced:
                out.append(txn)
        return out

    def _load_sync_state(self) -> dict[str, SyncState]:
        raw = self._store.read_json(SYNC_STATE_STORAGE_KEY, default={})
        if not isinstance(raw, dict):
            return {}
        out: dict[str, SyncState] = {}
        for txn_id, rec in raw.items():
            try:
                out[str(txn_id)] = SyncState.model_validate(rec)
            except Exception as ex:
                json_log("error", "offline_queue.sync_state_invalid", txn_id=txn_id, error=str(ex))
        return out

    def _persist_pending(self) -> None:
        with self._lock:
            payload = [t.model_dump(mode="json") for t in self._pending]
        self._store.write_json(OFFLINE_STORAGE_KEY, payload)

    def _persist_sync_state(self) -> None:
        with self._lock:
            payload = {k: v.model_dump(mode="json") for k, v in self._sync_state.items()}
        self._store.write_json(SYNC_STATE_STORAGE_KEY, payload)

    # Read side

    @property
    def connectivity(self) -> ConnectivityObserver:
        return self._connectivity

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def last_summary(self) -> Optional[SyncSummary]:
        return self._last_summary

    @property
    def pending_transactions(self) -> list[OfflineTransaction]:
        with self._lock:
            return list(self._pending)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def get(self, txn_id: str) -> Optional[OfflineTransaction]:
        with self._lock:
            return next((t for t in self._pending if t.id == txn_id), None)

    def sync_state(self, txn_id: str) -> Optional[SyncState]:
        with self._lock:
            return self._sync_state.get(txn_id)

    # Write side

    def save_offline_transaction(self, transaction: OfflineTransactionIn | dict) -> OfflineTransaction:
        if isinstance(transaction, dict):
            transaction = OfflineTransactionIn.model_validate(transaction)
        txn = OfflineTransaction(
            **transaction.model_dump(),
            id=new_offline_id(self._clock()),
            synced=False,
        )
        with self._lock:
            self._pending.append(txn)
            self._persist_pending()
        json_log(
            "info",
            "offline_queue.saved",
            txn_id=txn.id,
            transaction_number=txn.transaction_number,
            total_amount=txn.total_amount,
        )
        self._notifier.toast(
            "Transaction saved offline",
            f"{txn.transaction_number} will be synced when the connection returns.",
        )
        return txn

    def clear_synced_transactions(self) -> int:
        with self._lock:
            before = len(self._pending)
            self._pending = [t for t in self._pending if not t.synced]
            removed = before - len(self._pending)
            self._persist_pending()
        return removed

    def requeue(self, txn_id: str) -> bool:
        with self._lock:
            if self.get(txn_id) is None:
                return False
            state = self._sync_state.get(txn_id)
            if state is None:
                return True
            state.attempts = 0
            state.dead_letter = False
            state.next_attempt_at = None
            state.last_error = None
            self._persist_sync_state()
        json_log("info", "offline_queue.requeued", txn_id=txn_id)
        return True

    # Connectivity

    def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            self._notifier.toast(
                "Offline mode",
                "Transactions will be stored locally and synced when back online.",
                variant="destructive",
            )
            return
        self._notifier.toast("Connection restored", "Back online. Syncing transactions...")
        self.sync_transactions()

    # Replay

    def _state_for(self, txn_id: str) -> SyncState:
        with self._lock:
            state = self._sync_state.get(txn_id)
            if state is None:
                state = SyncState()
                self._sync_state[txn_id] = state
            return state

    def _complete_step(self, state: SyncState, step: str) -> None:
        if step not in state.completed_steps:
            state.completed_steps.append(step)
        self._persist_sync_state()

    def _replay(self, txn: OfflineTransaction, state: SyncState) -> None:
        if STEP_TRANSACTION not in state.completed_steps:
            remote_id = self._backend.insert_transaction(transaction_row(txn))
            state.remote_transaction_id = str(remote_id)
            self._complete_step(state, STEP_TRANSACTION)

        remote_id = state.remote_transaction_id
        if STEP_ITEMS not in state.completed_steps:
            self._backend.insert_transaction_items(transaction_item_rows(remote_id, txn))
            self._complete_step(state, STEP_ITEMS)

        if not txn.customer_id or txn.points_earned <= 0:
            return

        if STEP_CUSTOMER_TOTALS not in state.completed_steps:
            customer = self._backend.get_customer_totals(txn.customer_id)
            if not customer:
                # Customer no longer exists; nothing to credit.
                json_log("warn", "offline_queue.customer_missing", txn_id=txn.id, customer_id=txn.customer_id)
                return
            self._backend.update_customer_totals(
                txn.customer_id,
                total_points=int(customer.get("total_points") or 0) + txn.points_earned,
                total_spent=Decimal(str(customer.get("total_spent") or 0)) + txn.total_amount,
            )
            self._complete_step(state, STEP_CUSTOMER_TOTALS)

        if STEP_POINT_LEDGER not in state.completed_steps:
            self._backend.insert_point_transaction(
                customer_id=txn.customer_id,
                transaction_id=remote_id,
                points_change=txn.points_earned,
                description=f"Purchase {txn.transaction_number} (offline sync)",
            )
            self._complete_step(state, STEP_POINT_LEDGER)

    def _due(self, state: Optional[SyncState], now: datetime) -> bool:
        if state is None:
            return True
        if state.dead_letter:
            return False
        return state.next_attempt_at is None or state.next_attempt_at <= now

    def _record_failure(self, txn: OfflineTransaction, state: SyncState, ex: Exception, now: datetime) -> bool:
        state.attempts += 1
        state.last_attempt_at = now
        state.last_error = str(ex)[:1000]
        dead = self._retry_policy.exhausted(state.attempts)
        state.dead_letter = dead
        state.next_attempt_at = None if dead else self._retry_policy.next_attempt_at(state.attempts, txn.id, now)
        self._persist_sync_state()
        json_log(
            "error",
            "offline_queue.sync_failed",
            txn_id=txn.id,
            transaction_number=txn.transaction_number,
            attempts=state.attempts,
            completed_steps=list(state.completed_steps),
            dead_letter=dead,
            error=str(ex),
        )
        return dead

    def _record_interruption(self, txn: OfflineTransaction, state: SyncState, ex: Exception, now: datetime) -> None:
        # Backend unreachable: not the sale's fault, so no attempt is counted.
        state.last_attempt_at = now
        state.last_error = str(ex)[:1000]
        self._persist_sync_state()
        json_log(
            "warn",
            "offline_queue.sync_interrupted",
            txn_id=txn.id,
            transaction_number=txn.transaction_number,
            completed_steps=list(state.completed_steps),
            error=str(ex),
        )

    def sync_transactions(self) -> SyncSummary:
        summary = SyncSummary()
        if not self.is_online or self.pending_count == 0:
            self._last_summary = summary
            return summary
        if not self._sync_lock.acquire(blocking=False):
            return summary
        self._syncing = True
        try:
            summary.ran = True
            for txn in self.pending_transactions:
                if txn.synced:
                    continue
                now = self._clock()
                if not self._due(self.sync_state(txn.id), now):
                    summary.skipped += 1
                    continue
                state = self._state_for(txn.id)
                try:
                    self._replay(txn, state)
                except psycopg.OperationalError as ex:
                    summary.failed += 1
                    summary.interrupted = True
                    self._record_interruption(txn, state, ex, now)
                    break
                except Exception as ex:
                    summary.failed += 1
                    if self._record_failure(txn, state, ex, now):
                        summary.dead_lettered += 1
                    continue
                txn.synced = True
                summary.synced += 1
                json_log(
                    "info",
                    "offline_queue.synced",
                    txn_id=txn.id,
                    transaction_number=txn.transaction_number,
                    remote_transaction_id=state.remote_transaction_id,
                )

            with self._lock:
                synced_ids = {t.id for t in self._pending if t.synced}
                self._pending = [t for t in self._pending if not t.synced]
                for txn_id in synced_ids:
                    self._sync_state.pop(txn_id, None)
                self._persist_pending()
                self._persist_sync_state()
            self._last_summary = summary
        finally:
            self._syncing = False
            self._sync_lock.release()

        if summary.interrupted:
            # The rest of the queue waits for the next online transition.
            self._connectivity.set_online(False)

        if summary.synced > 0:
            self._notifier.toast("Sync complete", f"{summary.synced} transactions synced.")
        if summary.failed > 0:
            self._notifier.toast(
                "Some transactions failed to sync",
                f"{summary.failed} transactions failed to sync. They will be retried.",
                variant="destructive",
            )
        json_log("info", "offline_queue.sync_pass", **summary.to_dict())
        return summary
