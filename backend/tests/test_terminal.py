from datetime import datetime, timezone
from decimal import Decimal

import psycopg
import pytest
from fastapi import HTTPException

from backend.app.connectivity import ConnectivityObserver
from backend.app.notifications import Notifier
from backend.app.offline_queue import OfflineQueue
from backend.app.payment_guards import CheckoutRejected
from backend.app.pricing import PriceTier, Product
from backend.app.security import hash_pin
from backend.app.terminal import CATALOG_CACHE_KEY, PosTerminal, ProductNotFound


class _FakeBackend:
    def __init__(self):
        self.products = {
            "rice": Product(
                id="rice",
                name="Rice 5kg",
                selling_price=Decimal("10000"),
                current_stock=20,
                loyalty_points=2,
                price_tiers=(PriceTier(id="t-10", minimum_quantity=10, price=Decimal("8000")),),
            ),
            "soap": Product(id="soap", name="Soap", selling_price=Decimal("1500"), current_stock=4),
        }
        self.cashiers = []
        self.sales = []
        self.record_sale_error = None
        self.cashier_calls = 0

    def list_products(self, search="", limit=500):
        return [p for p in self.products.values() if search.lower() in p.name.lower()]

    def get_product(self, product_id):
        return self.products.get(product_id)

    def list_cashiers(self):
        self.cashier_calls += 1
        return list(self.cashiers)

    def record_sale(self, row, items, point_description=None):
        if self.record_sale_error is not None:
            raise self.record_sale_error
        self.sales.append((row, items))
        return f"txn-{len(self.sales)}"


def _terminal(store, backend, online=True):
    conn = ConnectivityObserver(online=online)
    notifier = Notifier()
    clock = lambda: datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    queue = OfflineQueue(store, backend, conn, notifier=notifier, clock=clock)
    return PosTerminal(store, backend, conn, queue, notifier=notifier, clock=clock)


def test_online_commit_records_sale_and_clears_cart(store):
    backend = _FakeBackend()
    t = _terminal(store, backend)
    t.add_to_cart("rice", 10)
    t.select_customer("c-1", "Maya")
    t.set_payment("cash", Decimal("100000"))

    out = t.commit()

    assert out["status"] == "committed"
    assert out["transaction_id"] == "txn-1"
    assert out["transaction_number"] == "POS-1714564800000"
    assert out["totals"]["total_amount"] == Decimal("80000")
    assert out["totals"]["change_amount"] == Decimal("20000")

    row, items = backend.sales[0]
    assert row["notes"] is None
    assert row["customer_id"] == "c-1"
    assert row["points_earned"] == 20
    assert items == [
        {"transaction_id": None, "product_id": "rice", "quantity": 10, "unit_price": Decimal("8000"), "total_price": Decimal("80000")}
    ]
    assert t.cart.is_empty()
    assert t.customer is None
    assert t.queue.pending_count == 0
    assert t.notifier.peek()[-1].title == "Transaction complete"


def test_unreachable_backend_queues_sale_instead_of_failing(store):
    backend = _FakeBackend()
    backend.record_sale_error = psycopg.OperationalError("server closed the connection unexpectedly")
    t = _terminal(store, backend)
    t.add_to_cart("soap", 2)
    t.set_payment("transfer", transfer_reference=" BNK-77 ")

    out = t.commit()

    assert out["status"] == "queued"
    assert out["offline_id"].startswith("offline_")
    assert t.connectivity.is_online is False
    pending = t.queue.pending_transactions
    assert len(pending) == 1
    assert pending[0].transaction_number == out["transaction_number"]
    assert pending[0].transfer_reference == "BNK-77"
    titles = [x.title for x in t.notifier.peek()]
    assert "Offline mode" in titles
    assert "Transaction saved offline" in titles
    assert t.cart.is_empty()


def test_rejected_checkout_keeps_cart(store):
    t = _terminal(store, _FakeBackend())
    t.add_to_cart("soap", 1)
    t.set_payment("cash", Decimal("1000"))
    with pytest.raises(CheckoutRejected):
        t.commit()
    assert len(t.cart) == 1


def test_offline_terminal_sells_from_cached_catalog(store):
    backend = _FakeBackend()
    t = _terminal(store, backend)
    t.refresh_catalog()
    assert {p["id"] for p in store.read_json(CATALOG_CACHE_KEY)} == {"rice", "soap"}

    # Restarted while the backend is down.
    restarted = _terminal(store, backend, online=False)
    line = restarted.add_to_cart("rice", 10)
    assert line.unit_price == Decimal("8000")
    restarted.set_payment("credit")
    out = restarted.commit()

    assert out["status"] == "queued"
    assert backend.sales == []
    cached = {p["id"]: p for p in store.read_json(CATALOG_CACHE_KEY)}
    assert cached["rice"]["current_stock"] == 10
    assert [p.id for p in restarted.cached_products("ric")] == ["rice"]


def test_offline_unknown_product_is_not_found(store):
    t = _terminal(store, _FakeBackend(), online=False)
    with pytest.raises(ProductNotFound) as exc_info:
        t.add_to_cart("rice")
    assert exc_info.value.status_code == 404


def test_product_gone_from_backend_is_dropped_from_cache(store):
    backend = _FakeBackend()
    t = _terminal(store, backend)
    t.refresh_catalog()
    del backend.products["soap"]
    with pytest.raises(ProductNotFound):
        t.find_product("soap")
    assert [p.id for p in t.cached_products()] == ["rice"]


def test_cashier_unlock_uses_backend_then_cache(store):
    backend = _FakeBackend()
    backend.cashiers = [
        {"id": "k-1", "name": "Lina", "pin_hash": hash_pin("2468"), "is_active": True},
        {"id": "k-2", "name": "Omar", "pin_hash": hash_pin("1357"), "is_active": False},
    ]
    t = _terminal(store, backend)
    assert t.unlock_cashier("2468") == {"id": "k-1", "name": "Lina"}
    assert backend.cashier_calls == 1

    offline = _terminal(store, backend, online=False)
    assert offline.unlock_cashier("2468")["name"] == "Lina"
    assert backend.cashier_calls == 1
    with pytest.raises(HTTPException) as exc_info:
        offline.unlock_cashier("1357")
    assert exc_info.value.status_code == 401


def test_hold_and_recall_restore_cart_and_payment(store):
    t = _terminal(store, _FakeBackend())
    t.add_to_cart("rice", 12)
    t.set_payment("transfer", transfer_reference="BNK-1")
    h = t.hold(note="wrong card")
    assert t.cart.is_empty()
    assert t.status()["held_count"] == 1

    t.recall(h.id)
    line = t.cart.get("rice")
    assert line.quantity == 12
    assert line.unit_price == Decimal("8000")
    assert t.payment_type == "transfer"
    assert t.transfer_reference == "BNK-1"
    assert t.held.held_count == 0
    with pytest.raises(HTTPException):
        t.recall(h.id)


def test_hold_with_empty_cart_returns_none(store):
    t = _terminal(store, _FakeBackend())
    assert t.hold() is None


def test_recall_caps_held_lines_at_current_stock_and_reprices(store):
    backend = _FakeBackend()
    t = _terminal(store, backend)
    t.add_to_cart("soap", 4)
    t.add_to_cart("rice", 12)
    h = t.hold()

    backend.products["soap"] = Product(id="soap", name="Soap", selling_price=Decimal("1500"), current_stock=1)
    backend.products["rice"] = Product(id="rice", name="Rice 5kg", selling_price=Decimal("9500"), current_stock=20)
    t.refresh_catalog()

    adjustments = t.recall(h.id)

    soap = t.cart.get("soap")
    assert soap.quantity == 1
    assert soap.quantity <= t.find_product("soap").current_stock
    assert t.cart.get("rice").unit_price == Decimal("9500")
    assert adjustments == [
        {"product_id": "soap", "name": "Soap", "requested": 4, "restored": 1, "reason": "insufficient_stock"}
    ]
    toast = t.notifier.peek()[-1]
    assert toast.title == "Held sale adjusted"
    assert toast.variant == "destructive"


def test_recall_drops_lines_for_products_that_are_gone_or_sold_out(store):
    backend = _FakeBackend()
    t = _terminal(store, backend)
    t.add_to_cart("soap", 2)
    t.add_to_cart("rice", 1)
    h = t.hold()

    del backend.products["rice"]
    backend.products["soap"] = Product(id="soap", name="Soap", selling_price=Decimal("1500"), current_stock=0)

    adjustments = t.recall(h.id)

    assert t.cart.is_empty()
    assert {(a["product_id"], a["restored"], a["reason"]) for a in adjustments} == {
        ("soap", 0, "insufficient_stock"),
        ("rice", 0, "not_found"),
    }


def test_offline_recall_is_checked_against_cached_stock(store):
    backend = _FakeBackend()
    t = _terminal(store, backend)
    t.refresh_catalog()
    t.add_to_cart("soap", 4)
    h = t.hold()

    # Another sale on this till used most of the soap while offline.
    t.connectivity.set_online(False)
    t.add_to_cart("soap", 3)
    t.set_payment("cash", Decimal("4500"))
    assert t.commit()["status"] == "queued"

    t.recall(h.id)
    assert t.cart.get("soap").quantity == 1


def test_update_quantity_ignores_products_not_in_cart(store):
    t = _terminal(store, _FakeBackend())
    assert t.update_quantity("rice", 5) is None
    assert t.cart.is_empty()

    t.add_to_cart("rice", 1)
    assert t.update_quantity("rice", 10).unit_price == Decimal("8000")
