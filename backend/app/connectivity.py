"""
Online/offline state for the terminal.

Components that care about connectivity subscribe to an observer instead of
reading process-global state. Listeners are told about real transitions only.
"""
import threading
import time
from typing import Callable, Optional

from .notifications import json_log

Listener = Callable[[bool], None]


class ConnectivityObserver:
    def __init__(self, online: bool = True):
        self._online = bool(online)
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe():
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def set_online(self, online: bool) -> bool:
        """Record the current state; returns True when it changed."""
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            listeners = list(self._listeners)
        json_log("info" if online else "warn", "connectivity.changed", online=online)
        for listener in listeners:
            try:
                listener(online)
            except Exception as ex:
                json_log("error", "connectivity.listener_failed", online=online, error=str(ex))
        return True


class ProbeConnectivity(ConnectivityObserver):
    """
    Observer driven by an active health probe (e.g. `SELECT 1` against the
    backend). Call `poll()` periodically; any probe exception counts as offline.
    """

    def __init__(self, probe: Callable[[], bool], online: bool = True):
        super().__init__(online=online)
        self._probe = probe
        self.last_error: Optional[str] = None
        self.last_latency_ms: Optional[int] = None
        self._stop = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

    def poll(self) -> bool:
        started = time.time()
        try:
            ok = bool(self._probe())
            self.last_error = None
        except Exception as ex:
            ok = False
            self.last_error = str(ex)
        self.last_latency_ms = int((time.time() - started) * 1000)
        self.set_online(ok)
        return ok

    def health(self) -> dict:
        return {"ok": self.is_online, "error": self.last_error, "latency_ms": self.last_latency_ms}

    def start_polling(self, interval_s: float) -> None:
        if self._poll_thread is not None:
            return
        self._stop.clear()

        def _loop():
            while True:
                self.poll()
                if self._stop.wait(max(0.5, float(interval_s))):
                    break

        self._poll_thread = threading.Thread(target=_loop, name="connectivity-poller", daemon=True)
        self._poll_thread.start()

    def stop_polling(self, timeout_s: float = 5.0) -> None:
        t = self._poll_thread
        if t is None:
            return
        self._stop.set()
        t.join(timeout_s)
        self._poll_thread = None
