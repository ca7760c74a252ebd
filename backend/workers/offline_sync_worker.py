#!/usr/bin/env python3
"""
Headless offline-queue drainer.

Replays sales a terminal saved to its local store while the backend was
unreachable. Useful for a till that was shut down offline: point this at its
store file and it syncs once the backend answers again.

Do not run it against a store file a live terminal API process is using; both
would rewrite the same queue.
"""

import argparse
import sys
import time
import traceback

from backend.app.config import settings
from backend.app.connectivity import ProbeConnectivity
from backend.app.db import DATABASE_URL, direct_conn
from backend.app.deps import retry_policy_from_settings
from backend.app.local_store import LocalStore
from backend.app.notifications import Notifier, json_log as _json_log
from backend.app.offline_queue import OfflineQueue
from backend.app.sales_backend import SalesBackend


def build_queue(store_path: str, db_url: str) -> OfflineQueue:
    backend = SalesBackend(conn_factory=lambda: direct_conn(db_url), db_url=db_url)
    connectivity = ProbeConnectivity(backend.ping, online=False)
    return OfflineQueue(
        LocalStore(store_path),
        backend,
        connectivity,
        notifier=Notifier(),
        retry_policy=retry_policy_from_settings(),
    )


def run_once(queue: OfflineQueue, connectivity: ProbeConnectivity) -> dict:
    was_online = connectivity.is_online
    online = connectivity.poll()
    if not online:
        summary = None
    elif was_online:
        summary = queue.sync_transactions()
    else:
        # The queue's connectivity listener already ran a pass for this transition.
        summary = queue.last_summary
    return {
        "online": online,
        "pending_count": queue.pending_count,
        "summary": (summary.to_dict() if summary else None),
        "probe_error": connectivity.last_error,
    }


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--store", default=settings.local_store_path, help="Terminal local store (sqlite file)")
    parser.add_argument("--db", default=DATABASE_URL)
    parser.add_argument("--interval", type=float, default=settings.connectivity_poll_seconds)
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    queue = build_queue(args.store, args.db)
    connectivity = queue.connectivity
    _json_log("info", "worker.offline_sync.start", store=args.store, pending_count=queue.pending_count)
    try:
        while True:
            try:
                result = run_once(queue, connectivity)
                _json_log("info", "worker.offline_sync.pass", **result)
            except Exception as ex:
                # Never crash the worker loop; the queue is persisted after every step.
                _json_log("error", "worker.offline_sync.error", error=str(ex))
                traceback.print_exc(file=sys.stderr)
            if args.once:
                break
            time.sleep(max(0.5, args.interval))
    finally:
        queue.close()


if __name__ == "__main__":
    main()
