import threading
from typing import Optional

from fastapi import Depends, HTTPException

from .config import settings
from .connectivity import ProbeConnectivity
from .held import HeldTransactionStore
from .local_store import LocalStore
from .notifications import Notifier
from .offline_queue import OfflineQueue, RetryPolicy
from .sales_backend import SalesBackend
from .terminal import PosTerminal

_terminal: Optional[PosTerminal] = None
_terminal_lock = threading.Lock()


def retry_policy_from_settings() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max(0, settings.sync_max_attempts),
        backoff_base_seconds=max(0, settings.sync_backoff_base_seconds),
        backoff_max_seconds=max(1, settings.sync_backoff_max_seconds),
    )


def build_terminal(store_path: Optional[str] = None, backend=None, connectivity=None) -> PosTerminal:
    store = LocalStore(store_path or settings.local_store_path)
    backend = backend or SalesBackend()
    # Start pessimistic; the first probe flips to online (and triggers a sync).
    connectivity = connectivity or ProbeConnectivity(backend.ping, online=False)
    notifier = Notifier()
    queue = OfflineQueue(
        store,
        backend,
        connectivity,
        notifier=notifier,
        retry_policy=retry_policy_from_settings(),
    )
    return PosTerminal(
        store,
        backend,
        connectivity,
        queue,
        notifier=notifier,
        held=HeldTransactionStore(store),
    )


def get_terminal() -> PosTerminal:
    global _terminal
    with _terminal_lock:
        if _terminal is None:
            _terminal = build_terminal()
        return _terminal


def set_terminal(terminal: Optional[PosTerminal]) -> None:
    global _terminal
    with _terminal_lock:
        previous, _terminal = _terminal, terminal
    if previous is not None and previous is not terminal:
        previous.queue.close()


def require_cashier(terminal: PosTerminal = Depends(get_terminal)) -> dict:
    if not terminal.cashier:
        raise HTTPException(status_code=401, detail="cashier not unlocked")
    return terminal.cashier
