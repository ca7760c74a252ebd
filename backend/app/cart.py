from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterator, Optional

from fastapi import HTTPException

from .pricing import PriceTier, Product, resolve_price


class InsufficientStock(HTTPException):
    def __init__(self, product: Product, requested: int, max_addable: int):
        self.product_id = product.id
        self.available = product.current_stock
        self.requested = requested
        self.max_addable = max(0, max_addable)
        super().__init__(
            status_code=409,
            detail={
                "error": "insufficient_stock",
                "message": f"{product.name}: insufficient stock (available {product.current_stock}, can add {self.max_addable})",
                "product_id": product.id,
                "available": product.current_stock,
                "requested": requested,
                "max_addable": self.max_addable,
            },
        )


class InvalidQuantity(HTTPException):
    def __init__(self, quantity):
        super().__init__(status_code=400, detail=f"quantity must be a positive integer (got {quantity})")


@dataclass
class CartLine:
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    loyalty_points: int = 0
    price_tier: Optional[PriceTier] = None
    image_url: Optional[str] = None

    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def points(self) -> int:
        return self.loyalty_points * self.quantity


class Cart:
    """
    Lines keyed by product id, one line per product.

    Every quantity change re-resolves the unit price for the whole line, so
    crossing a tier boundary reprices units already in the cart too.
    """

    def __init__(self) -> None:
        self._lines: dict[str, CartLine] = {}

    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._lines

    def __iter__(self) -> Iterator[CartLine]:
        return iter(list(self._lines.values()))

    def get(self, product_id: str) -> Optional[CartLine]:
        return self._lines.get(product_id)

    def lines(self) -> list[CartLine]:
        return list(self._lines.values())

    def is_empty(self) -> bool:
        return not self._lines

    def _priced_line(self, product: Product, quantity: int) -> CartLine:
        resolved = resolve_price(product, quantity)
        return CartLine(
            product_id=product.id,
            name=product.name,
            quantity=quantity,
            unit_price=resolved.unit_price,
            loyalty_points=product.loyalty_points,
            price_tier=resolved.tier,
            image_url=product.image_url,
        )

    def add_to_cart(self, product: Product, quantity: int = 1) -> CartLine:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise InvalidQuantity(quantity)
        existing = self._lines.get(product.id)
        existing_qty = existing.quantity if existing else 0
        new_qty = existing_qty + quantity
        if new_qty > product.current_stock:
            raise InsufficientStock(product, quantity, product.current_stock - existing_qty)
        line = self._priced_line(product, new_qty)
        self._lines[product.id] = line
        return line

    def update_quantity(self, product: Product, new_quantity: int) -> Optional[CartLine]:
        if new_quantity <= 0:
            self.remove_from_cart(product.id)
            return None
        if new_quantity > product.current_stock:
            raise InsufficientStock(product, new_quantity, product.current_stock)
        line = self._priced_line(product, new_quantity)
        self._lines[product.id] = line
        return line

    def remove_from_cart(self, product_id: str) -> None:
        self._lines.pop(product_id, None)

    def clear(self) -> None:
        self._lines.clear()

    def get_total_amount(self) -> Decimal:
        return sum((ln.total_price for ln in self._lines.values()), Decimal("0"))

    def get_total_points_earned(self) -> int:
        return sum(ln.points for ln in self._lines.values())

    def restore(self, lines: list[CartLine]) -> None:
        # Lines must already be priced and checked against stock.
        self._lines = {ln.product_id: ln for ln in lines}
