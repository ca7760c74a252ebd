"""
Tiered (wholesale) unit pricing.

A product may carry price tiers ("price variants"): once the committed
quantity reaches a tier's minimum, the whole line is sold at that tier's unit
price. The deepest qualifying tier wins; tiers never stack.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


def to_decimal(v, default: str = "0") -> Decimal:
    if v is None or v == "":
        return Decimal(default)
    return Decimal(str(v))


@dataclass(frozen=True)
class PriceTier:
    id: str
    minimum_quantity: int
    price: Decimal
    is_active: bool = True
    name: str = ""
    product_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "PriceTier":
        # price_variants.is_active is nullable; NULL is treated as inactive.
        return cls(
            id=str(row.get("id") or ""),
            minimum_quantity=int(row.get("minimum_quantity") or 0),
            price=to_decimal(row.get("price")),
            is_active=bool(row.get("is_active")),
            name=str(row.get("name") or ""),
            product_id=(str(row["product_id"]) if row.get("product_id") else None),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "product_id": self.product_id,
            "minimum_quantity": self.minimum_quantity,
            "price": str(self.price),
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    selling_price: Decimal
    current_stock: int
    minimum_stock: int = 0
    loyalty_points: int = 0
    price_tiers: tuple[PriceTier, ...] = field(default_factory=tuple)
    barcode: Optional[str] = None
    image_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Product":
        tiers_raw = row.get("price_variants") or []
        if isinstance(tiers_raw, str):
            tiers_raw = json.loads(tiers_raw or "[]")
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            selling_price=to_decimal(row.get("selling_price")),
            current_stock=int(row.get("current_stock") or 0),
            minimum_stock=int(row.get("minimum_stock") or 0),
            loyalty_points=int(row.get("loyalty_points") or 0),
            price_tiers=tuple(PriceTier.from_row(t) for t in tiers_raw if t),
            barcode=row.get("barcode") or None,
            image_url=row.get("image_url") or None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "selling_price": str(self.selling_price),
            "current_stock": self.current_stock,
            "minimum_stock": self.minimum_stock,
            "loyalty_points": self.loyalty_points,
            "price_variants": [t.to_dict() for t in self.price_tiers],
            "barcode": self.barcode,
            "image_url": self.image_url,
        }

    @property
    def is_low_stock(self) -> bool:
        return self.current_stock <= self.minimum_stock


@dataclass(frozen=True)
class ResolvedPrice:
    unit_price: Decimal
    tier: Optional[PriceTier] = None


def applicable_tiers(product: Product, quantity: int) -> list[PriceTier]:
    return [t for t in product.price_tiers if t.is_active and t.minimum_quantity <= quantity]


def resolve_price(product: Product, quantity: int) -> ResolvedPrice:
    candidates = applicable_tiers(product, quantity)
    if not candidates:
        return ResolvedPrice(unit_price=product.selling_price, tier=None)
    # Highest minimum wins; equal minimums fall back to the lowest tier id.
    best = sorted(candidates, key=lambda t: (-t.minimum_quantity, t.id))[0]
    return ResolvedPrice(unit_price=best.price, tier=best)
