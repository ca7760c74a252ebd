from backend.app.security import find_cashier_by_pin, hash_pin, verify_pin


def test_pin_hash_roundtrip():
    h = hash_pin("4321")
    assert h.startswith("$2")
    assert verify_pin("4321", h) is True
    assert verify_pin("1234", h) is False


def test_verify_pin_tolerates_missing_or_malformed_hash():
    assert verify_pin("4321", None) is False
    assert verify_pin("4321", "not-a-bcrypt-hash") is False
    assert verify_pin("", hash_pin("4321")) is False


def test_find_cashier_skips_inactive_accounts():
    cashiers = [
        {"id": "k-1", "name": "Omar", "pin_hash": hash_pin("1111"), "is_active": False},
        {"id": "k-2", "name": "Lina", "pin_hash": hash_pin("2222")},
    ]
    assert find_cashier_by_pin("1111", cashiers) is None
    assert find_cashier_by_pin(" 2222 ", cashiers) == {"id": "k-2", "name": "Lina"}
    assert find_cashier_by_pin("", cashiers) is None
