"""
Backend gateway for the terminal: every read/write the POS makes against the
hosted Postgres database goes through here.
"""
from decimal import Decimal
from typing import Optional

import psycopg
from fastapi import HTTPException

from .config import settings
from .db import DATABASE_URL, get_conn
from .pricing import Product

PRODUCT_SELECT = """
    SELECT p.id, p.name, p.barcode, p.image_url, p.selling_price, p.current_stock,
           p.minimum_stock, p.loyalty_points,
           COALESCE(v.variants, '[]'::jsonb) AS price_variants
    FROM products p
    LEFT JOIN LATERAL (
        SELECT jsonb_agg(
            jsonb_build_object(
              'id', pv.id,
              'product_id', pv.product_id,
              'name', pv.name,
              'price', pv.price,
              'minimum_quantity', pv.minimum_quantity,
              'is_active', pv.is_active
            )
            ORDER BY pv.minimum_quantity ASC, pv.id ASC
        ) AS variants
        FROM price_variants pv
        WHERE pv.product_id = p.id
    ) v ON true
"""


class SalesBackend:
    def __init__(self, conn_factory=get_conn, db_url: Optional[str] = None):
        self._conn_factory = conn_factory
        self._db_url = db_url or DATABASE_URL

    def ping(self) -> bool:
        # Direct connection (not the pool) so a dead backend fails fast.
        with psycopg.connect(self._db_url, connect_timeout=max(1, int(settings.connect_timeout_seconds))) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                return cur.fetchone() is not None

    # Catalog

    def list_products(self, search: str = "", limit: int = 200, offset: int = 0) -> list[Product]:
        search = (search or "").strip()
        params: list = []
        where = "WHERE p.is_active = true AND p.current_stock > 0"
        if search:
            where += " AND (p.name ILIKE %s OR p.barcode ILIKE %s)"
            like = f"%{search}%"
            params.extend([like, like])
        params.extend([max(1, int(limit)), max(0, int(offset))])
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    PRODUCT_SELECT + f" {where} ORDER BY p.name LIMIT %s OFFSET %s",
                    tuple(params),
                )
                return [Product.from_row(r) for r in cur.fetchall()]

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(PRODUCT_SELECT + " WHERE p.id = %s", (product_id,))
                row = cur.fetchone()
                return Product.from_row(row) if row else None

    def list_cashiers(self) -> list[dict]:
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, name, pin_hash, is_active
                    FROM pos_cashiers
                    WHERE is_active = true
                    ORDER BY name
                    """
                )
                return [dict(r) for r in cur.fetchall()]

    # Offline replay steps (each one is its own DB transaction)

    def _insert_transaction(self, cur, row: dict) -> str:
        # A replayed offline sale carries its offline id; a replay that already
        # landed resolves to that row. A clash on transaction_number with any
        # other sale raises UniqueViolation instead of merging into it.
        offline_id = row.get("offline_id")
        conflict = "ON CONFLICT (offline_id) DO NOTHING" if offline_id else ""
        cur.execute(
            f"""
            INSERT INTO transactions
              (transaction_number, total_amount, discount_amount, points_used, cashier_id, customer_id,
               payment_type, payment_amount, change_amount, is_credit, points_earned, due_date, notes,
               offline_id, created_at)
            VALUES
              (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
            {conflict}
            RETURNING id
            """,
            (
                row["transaction_number"],
                row["total_amount"],
                row.get("discount_amount") or 0,
                row.get("points_used") or 0,
                row.get("cashier_id"),
                row.get("customer_id"),
                row["payment_type"],
                row.get("payment_amount") or 0,
                row.get("change_amount") or 0,
                bool(row.get("is_credit")),
                row.get("points_earned") or 0,
                row.get("due_date"),
                row.get("notes"),
                offline_id,
                row.get("created_at"),
            ),
        )
        inserted = cur.fetchone()
        if inserted:
            return str(inserted["id"])
        cur.execute("SELECT id FROM transactions WHERE offline_id = %s", (offline_id,))
        existing = cur.fetchone()
        if not existing:
            raise RuntimeError(f"offline sale {offline_id} neither inserted nor found")
        return str(existing["id"])

    def insert_transaction(self, row: dict) -> str:
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                return self._insert_transaction(cur, row)

    def _insert_items(self, cur, items: list[dict]) -> None:
        for it in items:
            cur.execute(
                """
                INSERT INTO transaction_items (transaction_id, product_id, quantity, unit_price, total_price)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (it["transaction_id"], it["product_id"], it["quantity"], it["unit_price"], it["total_price"]),
            )

    def insert_transaction_items(self, items: list[dict]) -> None:
        if not items:
            return
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                self._insert_items(cur, items)

    def get_customer_totals(self, customer_id: str) -> Optional[dict]:
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, total_points, total_spent FROM customers WHERE id = %s",
                    (customer_id,),
                )
                row = cur.fetchone()
                return dict(row) if row else None

    def update_customer_totals(self, customer_id: str, total_points: int, total_spent: Decimal) -> None:
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE customers
                    SET total_points = %s, total_spent = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (total_points, total_spent, customer_id),
                )

    def insert_point_transaction(self, customer_id: str, transaction_id: str, points_change: int, description: str) -> None:
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO point_transactions (customer_id, transaction_id, points_change, description)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (customer_id, transaction_id, points_change, description),
                )

    # Online commit

    def _decrement_stock(self, cur, product_id: str, quantity: int) -> int:
        cur.execute(
            """
            UPDATE products
            SET current_stock = current_stock - %s, updated_at = now()
            WHERE id = %s AND current_stock >= %s
            RETURNING current_stock
            """,
            (quantity, product_id, quantity),
        )
        row = cur.fetchone()
        if not row:
            raise HTTPException(
                status_code=409,
                detail={"error": "insufficient_stock", "message": f"insufficient stock for product {product_id}", "product_id": product_id},
            )
        return int(row["current_stock"])

    def decrement_stock(self, product_id: str, quantity: int) -> int:
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                return self._decrement_stock(cur, product_id, quantity)

    def record_sale(self, row: dict, items: list[dict], point_description: Optional[str] = None) -> str:
        """
        Online commit: transaction, items, stock and loyalty in one DB transaction.
        `items` rows carry no transaction_id yet; it is filled in here.
        """
        with self._conn_factory() as conn:
            with conn.cursor() as cur:
                transaction_id = self._insert_transaction(cur, row)
                self._insert_items(cur, [{**it, "transaction_id": transaction_id} for it in items])
                for it in items:
                    self._decrement_stock(cur, it["product_id"], int(it["quantity"]))
                customer_id = row.get("customer_id")
                points = int(row.get("points_earned") or 0)
                if customer_id and points > 0:
                    cur.execute(
                        """
                        UPDATE customers
                        SET total_points = total_points + %s,
                            total_spent = total_spent + %s,
                            updated_at = now()
                        WHERE id = %s
                        RETURNING id
                        """,
                        (points, row["total_amount"], customer_id),
                    )
                    if cur.fetchone():
                        cur.execute(
                            """
                            INSERT INTO point_transactions (customer_id, transaction_id, points_change, description)
                            VALUES (%s, %s, %s, %s)
                            """,
                            (customer_id, transaction_id, points, point_description or f"Purchase {row['transaction_number']}"),
                        )
                return transaction_id
