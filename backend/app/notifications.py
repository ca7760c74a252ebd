import json
import sys
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional


def json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


@dataclass
class Toast:
    title: str
    description: str
    variant: str = "default"
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return asdict(self)


class Notifier:
    """
    Operator-facing messages (the cashier UI renders them as toasts).
    Keeps the most recent ones in memory until the UI drains them.
    """

    def __init__(self, maxlen: int = 100):
        self._toasts: deque[Toast] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def toast(self, title: str, description: str = "", variant: str = "default") -> Toast:
        t = Toast(title=title, description=description, variant=variant)
        with self._lock:
            self._toasts.append(t)
        json_log("warn" if variant == "destructive" else "info", "pos.toast", title=title, description=description)
        return t

    def peek(self) -> list[Toast]:
        with self._lock:
            return list(self._toasts)

    def drain(self, limit: Optional[int] = None) -> list[Toast]:
        with self._lock:
            out: list[Toast] = []
            while self._toasts and (limit is None or len(out) < limit):
                out.append(self._toasts.popleft())
            return out
