from __future__ import annotations

import dataclasses
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

import psycopg
from fastapi import HTTPException

from .cart import Cart, CartLine
from .connectivity import ConnectivityObserver
from .held import HeldTransaction, HeldTransactionStore
from .local_store import LocalStore
from .notifications import Notifier, json_log
from .offline_queue import (
    CartItem,
    OfflineQueue,
    OfflineTransactionIn,
    transaction_item_rows,
    transaction_row,
)
from .payment_guards import CheckoutTotals, assert_can_commit, compute_totals
from .pricing import Product
from .security import find_cashier_by_pin

CATALOG_CACHE_KEY = "pos_product_catalog"
CASHIER_CACHE_KEY = "pos_cashiers_cache"


class ProductNotFound(HTTPException):
    def __init__(self, product_id: str):
        super().__init__(status_code=404, detail=f"product {product_id} not found")


def line_to_dict(line: CartLine) -> dict:
    return {
        "product_id": line.product_id,
        "name": line.name,
        "quantity": line.quantity,
        "unit_price": line.unit_price,
        "total_price": line.total_price,
        "loyalty_points": line.loyalty_points,
        "price_variant": (line.price_tier.to_dict() if line.price_tier else None),
        "image_url": line.image_url,
    }


class PosTerminal:
    """
    One cashier station: the cart being built plus its payment details.

    Commits go straight to the backend while online. When the backend is
    unreachable (or the terminal already knows it is offline) the sale is
    handed to the offline queue instead; the cashier sees "queued", not
    "failed".
    """

    def __init__(
        self,
        store: LocalStore,
        backend,
        connectivity: ConnectivityObserver,
        queue: OfflineQueue,
        notifier: Optional[Notifier] = None,
        held: Optional[HeldTransactionStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._backend = backend
        self._connectivity = connectivity
        self.queue = queue
        self.notifier = notifier or Notifier()
        self.held = held or HeldTransactionStore(store)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()

        self.cart = Cart()
        self.customer: Optional[dict] = None
        self.discount_amount = Decimal("0")
        self.points_used = 0
        self.payment_type = "cash"
        self.payment_amount = Decimal("0")
        self.transfer_reference: Optional[str] = None
        self.cashier: Optional[dict] = None

        self._products: dict[str, Product] = {}
        for rec in store.read_json(CATALOG_CACHE_KEY, default=[]) or []:
            try:
                p = Product.from_row(rec)
            except (KeyError, TypeError, ValueError):
                continue
            self._products[p.id] = p

    @property
    def connectivity(self) -> ConnectivityObserver:
        return self._connectivity

    # Catalog

    def _persist_catalog(self) -> None:
        self._store.write_json(CATALOG_CACHE_KEY, [p.to_dict() for p in self._products.values()])

    def refresh_catalog(self, search: str = "", limit: int = 500) -> list[Product]:
        products = self._backend.list_products(search=search, limit=limit)
        with self._lock:
            if not search:
                self._products = {}
            for p in products:
                self._products[p.id] = p
            self._persist_catalog()
        json_log("info", "pos.catalog_refreshed", count=len(products), search=search or None)
        return products

    def cached_products(self, search: str = "") -> list[Product]:
        needle = (search or "").strip().lower()
        out = []
        for p in self._products.values():
            if needle and needle not in p.name.lower() and needle not in (p.barcode or "").lower():
                continue
            out.append(p)
        return sorted(out, key=lambda p: p.name)

    def find_product(self, product_id: str) -> Product:
        if self._connectivity.is_online:
            try:
                product = self._backend.get_product(product_id)
            except psycopg.OperationalError as ex:
                json_log("warn", "pos.product_lookup_unreachable", product_id=product_id, error=str(ex))
            else:
                with self._lock:
                    if product is None:
                        self._products.pop(product_id, None)
                        self._persist_catalog()
                        raise ProductNotFound(product_id)
                    self._products[product.id] = product
                    self._persist_catalog()
                return product
        product = self._products.get(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        return product

    # Cart

    def add_to_cart(self, product_id: str, quantity: int = 1) -> CartLine:
        product = self.find_product(product_id)
        with self._lock:
            return self.cart.add_to_cart(product, quantity)

    def update_quantity(self, product_id: str, quantity: int) -> Optional[CartLine]:
        # Only lines already in the cart can change; use add_to_cart for new ones.
        if product_id not in self.cart:
            return None
        if quantity <= 0:
            self.remove_from_cart(product_id)
            return None
        product = self.find_product(product_id)
        with self._lock:
            return self.cart.update_quantity(product, quantity)

    def remove_from_cart(self, product_id: str) -> None:
        with self._lock:
            self.cart.remove_from_cart(product_id)

    def select_customer(self, customer_id: Optional[str], name: Optional[str] = None) -> None:
        with self._lock:
            self.customer = {"id": customer_id, "name": name} if customer_id else None

    def set_payment(
        self,
        payment_type: str,
        payment_amount: Decimal = Decimal("0"),
        transfer_reference: Optional[str] = None,
        discount_amount: Decimal = Decimal("0"),
        points_used: int = 0,
    ) -> None:
        with self._lock:
            self.payment_type = payment_type
            self.payment_amount = Decimal(payment_amount or 0)
            self.transfer_reference = (transfer_reference or "").strip() or None
            self.discount_amount = Decimal(discount_amount or 0)
            self.points_used = int(points_used or 0)

    def totals(self, committed_at: Optional[datetime] = None) -> CheckoutTotals:
        with self._lock:
            return compute_totals(
                self.cart,
                self.payment_type,
                self.payment_amount,
                discount_amount=self.discount_amount,
                has_customer=self.customer is not None,
                committed_at=committed_at or self._clock(),
            )

    def clear(self) -> None:
        with self._lock:
            self.cart.clear()
            self.customer = None
            self.discount_amount = Decimal("0")
            self.points_used = 0
            self.payment_type = "cash"
            self.payment_amount = Decimal("0")
            self.transfer_reference = None

    def cart_view(self) -> dict:
        with self._lock:
            return {
                "lines": [line_to_dict(ln) for ln in self.cart.lines()],
                "customer": self.customer,
                "payment_type": self.payment_type,
                "payment_amount": self.payment_amount,
                "transfer_reference": self.transfer_reference,
                "totals": self.totals().to_dict(),
            }

    # Cashier

    def _cached_cashiers(self) -> list[dict]:
        return self._store.read_json(CASHIER_CACHE_KEY, default=[]) or []

    def unlock_cashier(self, pin: str) -> dict:
        cashier = find_cashier_by_pin(pin, self._cached_cashiers())
        if cashier is None and self._connectivity.is_online:
            # Cache may be stale; refresh so the next unlock also works offline.
            try:
                cashiers = self._backend.list_cashiers()
            except psycopg.OperationalError as ex:
                json_log("warn", "pos.cashier_refresh_unreachable", error=str(ex))
            else:
                self._store.write_json(CASHIER_CACHE_KEY, cashiers)
                cashier = find_cashier_by_pin(pin, cashiers)
        if cashier is None:
            raise HTTPException(status_code=401, detail="invalid pin")
        with self._lock:
            self.cashier = cashier
        json_log("info", "pos.cashier_unlocked", cashier_id=cashier["id"])
        return cashier

    # Commit

    def _snapshot(self, number: str, totals: CheckoutTotals, committed_at: datetime) -> OfflineTransactionIn:
        return OfflineTransactionIn(
            transaction_number=number,
            cart=[CartItem.from_line(ln) for ln in self.cart.lines()],
            total_amount=totals.total_amount,
            customer_id=(self.customer or {}).get("id"),
            customer_name=(self.customer or {}).get("name"),
            payment_type=self.payment_type,
            payment_amount=self.payment_amount,
            change_amount=totals.change_amount,
            transfer_reference=self.transfer_reference,
            points_earned=totals.points_earned,
            cashier_id=(self.cashier or {}).get("id"),
            created_at=committed_at,
            discount_amount=totals.discount_amount,
            points_used=self.points_used,
        )

    def _apply_local_stock(self, snapshot: OfflineTransactionIn) -> None:
        for it in snapshot.cart:
            p = self._products.get(it.product_id)
            if p is not None:
                self._products[p.id] = dataclasses.replace(p, current_stock=max(0, p.current_stock - it.quantity))
        self._persist_catalog()

    def commit(self) -> dict:
        with self._lock:
            committed_at = self._clock()
            totals = self.totals(committed_at)
            assert_can_commit(
                self.cart,
                self.payment_type,
                self.payment_amount,
                totals.total_amount,
                self.transfer_reference,
            )
            number = f"POS-{int(committed_at.timestamp() * 1000)}"
            snapshot = self._snapshot(number, totals, committed_at)

            result = {"transaction_number": number, "totals": totals.to_dict()}
            committed = False
            if self._connectivity.is_online:
                try:
                    transaction_id = self._backend.record_sale(
                        transaction_row(snapshot, from_offline=False),
                        transaction_item_rows(None, snapshot),
                    )
                except psycopg.OperationalError as ex:
                    json_log("warn", "pos.commit_unreachable", transaction_number=number, error=str(ex))
                    self._connectivity.set_online(False)
                else:
                    committed = True
                    result.update({"status": "committed", "transaction_id": transaction_id})

            if not committed:
                queued = self.queue.save_offline_transaction(snapshot)
                result.update({"status": "queued", "offline_id": queued.id})
            else:
                self.notifier.toast("Transaction complete", f"Transaction {number} processed.")

            self._apply_local_stock(snapshot)
            self.clear()
        json_log("info", "pos.committed", transaction_number=number, status=result["status"])
        return result

    # Held sales

    def hold(self, note: Optional[str] = None) -> Optional[HeldTransaction]:
        with self._lock:
            h = self.held.hold(
                [CartItem.from_line(ln) for ln in self.cart.lines()],
                customer=self.customer,
                payment_type=self.payment_type,
                payment_amount=self.payment_amount,
                transfer_reference=self.transfer_reference,
                note=note,
            )
            if h is not None:
                self.clear()
            return h

    def _rebuild_held_cart(self, items: list[CartItem]) -> tuple[Cart, list[dict]]:
        """
        Re-prices held lines against the current catalog. A line is capped at
        the product's current stock, and dropped when nothing is left or the
        product is gone. Every such change is returned as an adjustment.
        """
        cart = Cart()
        adjustments = []
        for it in items:
            try:
                product = self.find_product(it.product_id)
            except ProductNotFound:
                product = None
            available = product.current_stock if product is not None else 0
            quantity = min(it.quantity, max(0, available))
            if quantity < it.quantity:
                adjustments.append(
                    {
                        "product_id": it.product_id,
                        "name": it.name,
                        "requested": it.quantity,
                        "restored": quantity,
                        "reason": ("not_found" if product is None else "insufficient_stock"),
                    }
                )
            if quantity > 0:
                cart.update_quantity(product, quantity)
        return cart, adjustments

    def recall(self, held_id: str) -> list[dict]:
        with self._lock:
            h = self.held.recall(held_id)
            if h is None:
                raise HTTPException(status_code=404, detail=f"held transaction {held_id} not found")
            rebuilt, adjustments = self._rebuild_held_cart(h.cart)
            self.cart.restore(rebuilt.lines())
            self.customer = h.customer
            self.payment_type = h.payment_type
            self.payment_amount = h.payment_amount
            self.transfer_reference = h.transfer_reference
        if adjustments:
            json_log("warn", "pos.held_recall_adjusted", held_id=held_id, adjustments=adjustments)
            self.notifier.toast(
                "Held sale adjusted",
                "; ".join(f"{a['name']}: {a['requested']} -> {a['restored']}" for a in adjustments),
                variant="destructive",
            )
        return adjustments

    def status(self) -> dict:
        return {
            "online": self._connectivity.is_online,
            "pending_count": self.queue.pending_count,
            "is_syncing": self.queue.is_syncing,
            "held_count": self.held.held_count,
            "cart_lines": len(self.cart),
            "cashier": self.cashier,
        }
