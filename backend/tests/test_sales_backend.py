from contextlib import contextmanager
from decimal import Decimal

import pytest
from fastapi import HTTPException
from psycopg import errors as pg_errors

from backend.app.sales_backend import SalesBackend


class _FakeCursor:
    def __init__(self, existing_numbers=None, offline_ids=None, stock=None, customers=None, product_rows=None):
        self.existing_numbers = dict(existing_numbers or {})
        self.offline_ids = dict(offline_ids or {})
        self.stock = dict(stock or {})
        self.customers = set(customers or [])
        self.product_rows = list(product_rows or [])
        self.executed = []
        self.rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.executed.append((text, params))
        if text.startswith("insert into transactions"):
            number, offline_id = params[0], params[-2]
            if offline_id in self.offline_ids and "on conflict (offline_id) do nothing" in text:
                self.rows = []
                return
            if number in self.existing_numbers:
                raise pg_errors.UniqueViolation('duplicate key value violates unique constraint "transactions_transaction_number_key"')
            tid = f"txn-{len(self.existing_numbers) + 1}"
            self.existing_numbers[number] = tid
            if offline_id:
                self.offline_ids[offline_id] = tid
            self.rows = [{"id": tid}]
            return
        if text.startswith("select id from transactions where offline_id"):
            tid = self.offline_ids.get(params[0])
            self.rows = [{"id": tid}] if tid else []
            return
        if text.startswith("insert into transaction_items") or text.startswith("insert into point_transactions"):
            self.rows = []
            return
        if text.startswith("update products"):
            qty, pid, _ = params
            if self.stock.get(pid, 0) >= qty:
                self.stock[pid] -= qty
                self.rows = [{"current_stock": self.stock[pid]}]
            else:
                self.rows = []
            return
        if text.startswith("update customers"):
            self.rows = [{"id": params[-1]}] if params[-1] in self.customers else []
            return
        if "from products p" in text:
            self.rows = list(self.product_rows)
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)

    def statements(self, prefix):
        return [(t, p) for t, p in self.executed if t.startswith(prefix)]


class _FakeConn:
    def __init__(self, cur):
        self.cur = cur

    def cursor(self):
        return self.cur


def _backend(cur):
    @contextmanager
    def _factory():
        yield _FakeConn(cur)

    return SalesBackend(conn_factory=_factory, db_url="postgresql://unused")


def _row(number="POS-1", customer_id=None, points=0, offline_id=None):
    return {
        "transaction_number": number,
        "offline_id": offline_id,
        "total_amount": Decimal("80000"),
        "customer_id": customer_id,
        "payment_type": "cash",
        "payment_amount": Decimal("100000"),
        "change_amount": Decimal("20000"),
        "points_earned": points,
        "notes": None,
    }


def _items():
    return [{"product_id": "rice", "quantity": 10, "unit_price": Decimal("8000"), "total_price": Decimal("80000")}]


def test_insert_transaction_resolves_replay_by_offline_id():
    cur = _FakeCursor(existing_numbers={"POS-1": "txn-existing"}, offline_ids={"offline_1_a": "txn-existing"})
    b = _backend(cur)
    assert b.insert_transaction(_row("POS-1", offline_id="offline_1_a")) == "txn-existing"
    assert len(cur.statements("select id from transactions where offline_id")) == 1
    assert b.insert_transaction(_row("POS-2", offline_id="offline_2_b")) == "txn-2"


def test_replay_sharing_a_number_with_another_sale_is_rejected():
    cur = _FakeCursor(existing_numbers={"POS-1": "txn-other"}, offline_ids={"offline_1_a": "txn-other"})
    with pytest.raises(pg_errors.UniqueViolation):
        _backend(cur).insert_transaction(_row("POS-1", offline_id="offline_1_z"))
    assert cur.statements("select id from transactions") == []


def test_record_sale_with_duplicate_number_fails_instead_of_merging():
    cur = _FakeCursor(existing_numbers={"POS-1": "txn-other"}, stock={"rice": 12}, customers={"c-1"})
    with pytest.raises(pg_errors.UniqueViolation):
        _backend(cur).record_sale(_row("POS-1", customer_id="c-1", points=20), _items())
    assert cur.stock["rice"] == 12
    assert cur.statements("insert into transaction_items") == []
    assert cur.statements("insert into point_transactions") == []
    (text, _), = cur.statements("insert into transactions")
    assert "on conflict" not in text


def test_record_sale_writes_items_stock_and_points():
    cur = _FakeCursor(stock={"rice": 12}, customers={"c-1"})
    b = _backend(cur)
    tid = b.record_sale(_row(customer_id="c-1", points=20), _items())

    assert tid == "txn-1"
    assert cur.stock["rice"] == 2
    (_, item_params), = cur.statements("insert into transaction_items")
    assert item_params[0] == "txn-1"
    (_, point_params), = cur.statements("insert into point_transactions")
    assert point_params == ("c-1", "txn-1", 20, "Purchase POS-1")


def test_record_sale_skips_points_for_unknown_customer():
    cur = _FakeCursor(stock={"rice": 12})
    _backend(cur).record_sale(_row(customer_id="c-missing", points=5), _items())
    assert cur.statements("insert into point_transactions") == []


def test_record_sale_rejects_insufficient_stock():
    cur = _FakeCursor(stock={"rice": 3})
    with pytest.raises(HTTPException) as exc_info:
        _backend(cur).record_sale(_row(), _items())
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["error"] == "insufficient_stock"


def test_list_products_filters_by_search_and_builds_products():
    cur = _FakeCursor(
        product_rows=[
            {
                "id": "rice",
                "name": "Rice 5kg",
                "selling_price": Decimal("10000"),
                "current_stock": 7,
                "minimum_stock": 2,
                "loyalty_points": 1,
                "barcode": "622000",
                "image_url": None,
                "price_variants": [{"id": "t", "price": Decimal("8000"), "minimum_quantity": 10, "is_active": True}],
            }
        ]
    )
    products = _backend(cur).list_products(search=" ric ", limit=0)
    assert [p.id for p in products] == ["rice"]
    assert products[0].price_tiers[0].price == Decimal("8000")
    text, params = cur.executed[-1]
    assert "ilike" in text
    assert params == ("%ric%", "%ric%", 1, 0)
