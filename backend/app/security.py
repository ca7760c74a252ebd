from typing import Optional

import bcrypt


def hash_pin(pin: str) -> str:
    # bcrypt hashes are safe to cache on the terminal for offline verification.
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_pin(pin: str, hashed: Optional[str]) -> bool:
    if not hashed or not pin:
        return False
    try:
        return bcrypt.checkpw(pin.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the cache.
        return False


def find_cashier_by_pin(pin: str, cashiers: list[dict]) -> Optional[dict]:
    pin = (pin or "").strip()
    if not pin:
        return None
    for c in cashiers or []:
        if not c.get("is_active", True):
            continue
        if verify_pin(pin, c.get("pin_hash")):
            return {"id": str(c.get("id")), "name": c.get("name")}
    return None
