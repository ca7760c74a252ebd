#!/usr/bin/env python3
import argparse
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.db import DATABASE_URL
from backend.app.security import hash_pin


def main() -> int:
    parser = argparse.ArgumentParser(description="Create a POS cashier or reset their PIN.")
    parser.add_argument(
        "--db",
        default=DATABASE_URL,
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    parser.add_argument("--name", required=True)
    parser.add_argument("--pin", required=True)
    parser.add_argument("--deactivate", action="store_true", help="Disable the cashier instead")
    args = parser.parse_args()

    name = (args.name or "").strip()
    pin = (args.pin or "").strip()
    if not name:
        print("name is required", file=sys.stderr)
        return 2
    if not pin.isdigit() or not (4 <= len(pin) <= 8):
        print("pin must be 4-8 digits", file=sys.stderr)
        return 2

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE pos_cashiers
                    SET pin_hash = %s, is_active = %s
                    WHERE name = %s
                    RETURNING id
                    """,
                    (hash_pin(pin), not args.deactivate, name),
                )
                row = cur.fetchone()
                if not row:
                    cur.execute(
                        """
                        INSERT INTO pos_cashiers (name, pin_hash, is_active)
                        VALUES (%s, %s, %s)
                        RETURNING id
                        """,
                        (name, hash_pin(pin), not args.deactivate),
                    )
                    row = cur.fetchone()

    # Terminals refetch the cashier list when an unknown PIN is entered online.
    print(f"OK {row['id']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
