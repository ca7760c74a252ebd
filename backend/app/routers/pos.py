from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..deps import get_terminal, require_cashier
from ..terminal import PosTerminal, line_to_dict
from ..validation import Money, PaymentType, ProductId, TransferReference

router = APIRouter(prefix="/pos", tags=["pos"])


class CartItemIn(BaseModel):
    product_id: ProductId
    quantity: int = Field(default=1, ge=1)


class CartQuantityIn(BaseModel):
    quantity: int


class CustomerIn(BaseModel):
    customer_id: Optional[str] = None
    name: Optional[str] = None


class PaymentIn(BaseModel):
    payment_type: PaymentType = "cash"
    payment_amount: Money = Decimal("0")
    transfer_reference: TransferReference = None
    discount_amount: Money = Decimal("0")
    points_used: int = Field(default=0, ge=0)


class HoldIn(BaseModel):
    note: Optional[str] = None


class HeldNoteIn(BaseModel):
    note: str


class ConnectivityIn(BaseModel):
    online: bool


class CashierUnlockIn(BaseModel):
    pin: str = Field(min_length=1, max_length=32)


def _product_dict(p) -> dict:
    d = p.to_dict()
    d["low_stock"] = p.is_low_stock
    return d


@router.get("/status")
def status(terminal: PosTerminal = Depends(get_terminal)):
    return terminal.status()


@router.get("/catalog")
def catalog(search: str = "", terminal: PosTerminal = Depends(get_terminal)):
    return {"products": [_product_dict(p) for p in terminal.cached_products(search)]}


@router.post("/catalog/refresh")
def refresh_catalog(search: str = "", terminal: PosTerminal = Depends(get_terminal)):
    if not terminal.queue.is_online:
        raise HTTPException(status_code=503, detail="backend unreachable; using cached catalog")
    products = terminal.refresh_catalog(search=search)
    return {"products": [_product_dict(p) for p in products]}


@router.get("/cart")
def get_cart(terminal: PosTerminal = Depends(get_terminal)):
    return terminal.cart_view()


@router.post("/cart/items")
def add_cart_item(data: CartItemIn, terminal: PosTerminal = Depends(get_terminal)):
    line = terminal.add_to_cart(data.product_id, data.quantity)
    return {"line": line_to_dict(line), "cart": terminal.cart_view()}


@router.patch("/cart/items/{product_id}")
def update_cart_item(product_id: str, data: CartQuantityIn, terminal: PosTerminal = Depends(get_terminal)):
    line = terminal.update_quantity(product_id, data.quantity)
    return {"line": (line_to_dict(line) if line else None), "cart": terminal.cart_view()}


@router.delete("/cart/items/{product_id}")
def remove_cart_item(product_id: str, terminal: PosTerminal = Depends(get_terminal)):
    terminal.remove_from_cart(product_id)
    return {"cart": terminal.cart_view()}


@router.delete("/cart")
def clear_cart(terminal: PosTerminal = Depends(get_terminal)):
    terminal.clear()
    return {"cart": terminal.cart_view()}


@router.put("/customer")
def select_customer(data: CustomerIn, terminal: PosTerminal = Depends(get_terminal)):
    terminal.select_customer(data.customer_id, data.name)
    return {"cart": terminal.cart_view()}


@router.put("/payment")
def set_payment(data: PaymentIn, terminal: PosTerminal = Depends(get_terminal)):
    terminal.set_payment(
        data.payment_type,
        payment_amount=data.payment_amount,
        transfer_reference=data.transfer_reference,
        discount_amount=data.discount_amount,
        points_used=data.points_used,
    )
    return {"cart": terminal.cart_view()}


@router.get("/totals")
def totals(terminal: PosTerminal = Depends(get_terminal)):
    return terminal.totals().to_dict()


@router.post("/checkout")
def checkout(terminal: PosTerminal = Depends(get_terminal), _cashier=Depends(require_cashier)):
    return terminal.commit()


@router.post("/cashier/unlock")
def unlock_cashier(data: CashierUnlockIn, terminal: PosTerminal = Depends(get_terminal)):
    return {"cashier": terminal.unlock_cashier(data.pin)}


@router.post("/cashier/lock")
def lock_cashier(terminal: PosTerminal = Depends(get_terminal)):
    terminal.cashier = None
    return {"ok": True}


@router.get("/held")
def list_held(terminal: PosTerminal = Depends(get_terminal)):
    return {"held": [h.model_dump(mode="json") for h in terminal.held.held]}


@router.post("/held")
def hold_sale(data: HoldIn, terminal: PosTerminal = Depends(get_terminal)):
    h = terminal.hold(note=data.note)
    if h is None:
        raise HTTPException(status_code=400, detail="cart is empty")
    return {"held": h.model_dump(mode="json")}


@router.post("/held/{held_id}/recall")
def recall_sale(held_id: str, terminal: PosTerminal = Depends(get_terminal)):
    adjustments = terminal.recall(held_id)
    return {"cart": terminal.cart_view(), "adjustments": adjustments}


@router.patch("/held/{held_id}")
def update_held_note(held_id: str, data: HeldNoteIn, terminal: PosTerminal = Depends(get_terminal)):
    h = terminal.held.update_note(held_id, data.note)
    if h is None:
        raise HTTPException(status_code=404, detail=f"held transaction {held_id} not found")
    return {"held": h.model_dump(mode="json")}


@router.delete("/held/{held_id}")
def delete_held(held_id: str, terminal: PosTerminal = Depends(get_terminal)):
    terminal.held.delete(held_id)
    return {"ok": True}


@router.get("/offline/pending")
def offline_pending(terminal: PosTerminal = Depends(get_terminal)):
    queue = terminal.queue
    out = []
    for t in queue.pending_transactions:
        state = queue.sync_state(t.id)
        out.append(
            {
                **t.model_dump(mode="json"),
                "sync_state": (state.model_dump(mode="json") if state else None),
            }
        )
    return {
        "online": queue.is_online,
        "is_syncing": queue.is_syncing,
        "pending_count": len(out),
        "transactions": out,
    }


@router.post("/offline/sync")
def offline_sync(terminal: PosTerminal = Depends(get_terminal)):
    summary = terminal.queue.sync_transactions()
    return {**summary.to_dict(), "pending_count": terminal.queue.pending_count}


@router.post("/offline/clear-synced")
def offline_clear_synced(terminal: PosTerminal = Depends(get_terminal)):
    removed = terminal.queue.clear_synced_transactions()
    return {"removed": removed, "pending_count": terminal.queue.pending_count}


@router.post("/offline/{txn_id}/requeue")
def offline_requeue(txn_id: str, terminal: PosTerminal = Depends(get_terminal)):
    if not terminal.queue.requeue(txn_id):
        raise HTTPException(status_code=404, detail=f"offline transaction {txn_id} not found")
    return {"ok": True}


@router.post("/connectivity")
def set_connectivity(data: ConnectivityIn, terminal: PosTerminal = Depends(get_terminal)):
    # Manual override from the UI (mirrors the browser's online/offline events).
    changed = terminal.connectivity.set_online(data.online)
    return {"online": terminal.queue.is_online, "changed": changed}


@router.get("/notifications")
def notifications(terminal: PosTerminal = Depends(get_terminal)):
    return {"notifications": [t.to_dict() for t in terminal.notifier.drain()]}
