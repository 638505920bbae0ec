"""chronodid.core.webhooks

Persistent outbound webhook subscriptions + dispatcher: the live-update channel.

Design goals:
- stdlib-only HTTP (urllib.request)
- best-effort delivery off the ingest path (never block/abort ingestion)
- simple glob matching on event kind strings (fnmatch)
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any

from chronodid import __version__
from chronodid.core.database import AnyEvent, Database

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class WebhookSubscription:
    id: int
    url: str
    event_globs: str
    enabled: bool
    created_at: str


def _split_event_globs(event_globs: str) -> list[str]:
    # Stored as a comma-separated list.
    parts = [p.strip() for p in event_globs.split(",")]
    return [p for p in parts if p]


def _row_to_subscription(r: Any) -> WebhookSubscription:
    return WebhookSubscription(
        id=int(r[0]),
        url=str(r[1]),
        event_globs=str(r[2]),
        enabled=bool(int(r[3])),
        created_at=str(r[4]),
    )


def subscription_matches(sub: WebhookSubscription, *, event_kind: str) -> bool:
    return any(fnmatchcase(event_kind, g) for g in _split_event_globs(sub.event_globs))


def list_webhook_subscriptions(db: Database) -> list[WebhookSubscription]:
    rows = db.conn.execute(
        "SELECT id, url, event_globs, enabled, created_at FROM webhook_subscriptions ORDER BY id ASC"
    ).fetchall()
    return [_row_to_subscription(r) for r in rows]


def add_webhook_subscription(db: Database, *, url: str, event_globs: str = "*", enabled: bool = True) -> int:
    with db.transaction() as conn:
        cur = conn.execute(
            "INSERT INTO webhook_subscriptions (url, event_globs, enabled) VALUES (?, ?, ?)",
            (url, event_globs, 1 if enabled else 0),
        )
    return int(cur.lastrowid)


def remove_webhook_subscription(db: Database, *, sub_id: int) -> bool:
    with db.transaction() as conn:
        cur = conn.execute("DELETE FROM webhook_subscriptions WHERE id = ?", (int(sub_id),))
    return int(cur.rowcount) > 0


def event_notification(event: AnyEvent) -> dict[str, Any]:
    """Wire shape of one live update."""

    return {
        "event": {
            "type": str(event.kind),
            "identity": event.identity,
            "block_number": event.block_number,
            "log_index": event.log_index,
            "transaction_hash": event.transaction_hash,
            "natural_key": event.natural_key,
            "data": event.payload(),
        }
    }


def _post_json(url: str, payload: dict[str, Any], *, timeout_s: float) -> None:
    body = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json", "User-Agent": f"chronodid-webhooks/{__version__}"},
    )
    # urlopen timeout covers connect + read.
    with urllib.request.urlopen(req, timeout=timeout_s) as resp:  # noqa: S310
        _ = resp.read()  # drain


def matching_subscriptions(db: Database, *, event_kind: str) -> list[WebhookSubscription]:
    rows = db.conn.execute(
        "SELECT id, url, event_globs, enabled, created_at FROM webhook_subscriptions WHERE enabled = 1"
    ).fetchall()
    subs = [_row_to_subscription(r) for r in rows]
    return [s for s in subs if subscription_matches(s, event_kind=event_kind)]


def deliver(sub: WebhookSubscription, payload: dict[str, Any], *, timeout_s: float = 3.0) -> bool:
    """POST one notification, up to 3 attempts with exponential backoff."""

    backoff_s = 0.5
    for attempt in range(1, _MAX_ATTEMPTS + 1):
        try:
            _post_json(sub.url, payload, timeout_s=timeout_s)
            return True
        except (urllib.error.URLError, TimeoutError, ValueError) as e:
            if attempt < _MAX_ATTEMPTS:
                time.sleep(backoff_s)
                backoff_s *= 2
            else:
                logger.warning("webhook %d to %s gave up: %s", sub.id, sub.url, e)
    return False


def dispatch_event_webhooks(db: Database, event: AnyEvent, *, timeout_s: float = 3.0) -> int:
    """Dispatch webhooks for an applied event, inline. Returns deliveries that succeeded."""

    subs = matching_subscriptions(db, event_kind=str(event.kind))
    if not subs:
        return 0
    payload = event_notification(event)
    return sum(1 for sub in subs if deliver(sub, payload, timeout_s=timeout_s))


_STOP = object()


class WebhookNotifier:
    """Notifier for :class:`~chronodid.core.ingestion.IngestionPipeline`.

    Matching happens on the ingesting thread; delivery happens on a daemon worker fed
    by a bounded queue, so a slow or dead subscriber never delays ``apply``. When the
    queue is full the notification is dropped with a warning.
    """

    def __init__(self, db: Database, *, timeout_s: float = 3.0, max_pending: int = 1000) -> None:
        self._db = db
        self._timeout_s = timeout_s
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max(1, int(max_pending)))
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.delivered = 0
        self.dropped = 0

    def __call__(self, event: AnyEvent) -> None:
        subs = matching_subscriptions(self._db, event_kind=str(event.kind))
        if not subs:
            return
        self._ensure_worker()
        try:
            self._queue.put_nowait((subs, event_notification(event)))
        except queue.Full:
            self.dropped += 1
            logger.warning("webhook queue full, dropping notification for %s", event.natural_key)

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name="chronodid-webhooks", daemon=True)
                self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            subs, payload = item
            for sub in subs:
                if deliver(sub, payload, timeout_s=self._timeout_s):
                    self.delivered += 1

    def close(self, timeout_s: float | None = 10.0) -> None:
        """Deliver what is already queued, then stop the worker."""

        with self._lock:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout_s)
        if thread.is_alive():
            logger.warning("webhook worker still delivering after %.1fs; abandoning it", timeout_s or 0.0)
