"""chronodid.core.ingestion

Ledger logs in, journal + projections out.

The pipeline is intentionally small:
- decode (raw logs or event dicts) into typed events
- append to the event store and project, in one transaction
- fan out to in-process handlers (e.g. cache invalidation)
- notify live subscribers, best-effort

The event store is the source of truth for dedupe across restarts. Re-delivering
an event is always safe.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from chronodid.core.config import IndexerConfig
from chronodid.core.database import AnyEvent, Database
from chronodid.core.events import EventKind, parse_event
from chronodid.core.exceptions import (
    ConfigError,
    DedupeConflictError,
    LedgerUnavailableError,
    MalformedEventError,
)
from chronodid.core.projections import project_event
from chronodid.ledger import LedgerSource
from chronodid.ledger.abi import decode_log

logger = logging.getLogger(__name__)

EventHandler = Callable[[AnyEvent], None]
Notifier = Callable[[AnyEvent], None]

ALL_KINDS = "*"


class KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.lock_for(key):
            yield


@dataclass
class IngestStats:
    applied: int = 0
    duplicates: int = 0
    skipped: int = 0
    conflicts: int = 0
    last_block: int | None = None

    def merge(self, other: IngestStats) -> None:
        self.applied += other.applied
        self.duplicates += other.duplicates
        self.skipped += other.skipped
        self.conflicts += other.conflicts
        if other.last_block is not None:
            self.last_block = other.last_block


def coerce_event(obj: Any) -> AnyEvent:
    """Typed event, event dict, or raw ``eth_getLogs`` entry → typed event."""

    if isinstance(obj, Mapping) and "topics" in obj:
        return decode_log(dict(obj))
    return parse_event(obj)


@dataclass
class IngestionPipeline:
    db: Database
    ledger: LedgerSource | None = None
    indexer: IndexerConfig = field(default_factory=IndexerConfig)
    notifier: Notifier | None = None

    _handlers: dict[str, list[EventHandler]] = field(default_factory=dict)
    _handlers_lock: threading.RLock = field(default_factory=threading.RLock)
    _locks: KeyedLocks = field(default_factory=KeyedLocks)
    _sync_lock: threading.Lock = field(default_factory=threading.Lock)

    def register_handler(self, handler: EventHandler, kind: EventKind | str = ALL_KINDS) -> None:
        with self._handlers_lock:
            self._handlers.setdefault(str(kind), []).append(handler)

    def _route(self, event: AnyEvent) -> None:
        with self._handlers_lock:
            handlers = [*self._handlers.get(str(event.kind), []), *self._handlers.get(ALL_KINDS, [])]
        for h in handlers:
            try:
                h(event)
            except Exception:  # noqa: BLE001
                logger.exception("handler %r failed for %s", h, event.natural_key)

    def _notify(self, event: AnyEvent) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(event)
        except Exception as e:  # noqa: BLE001
            logger.warning("live-update notification failed for %s: %s", event.natural_key, e)

    def apply(self, event: AnyEvent) -> bool:
        """Append + project one event. Returns False when it was already applied.

        Raises:
            DedupeConflictError: same natural key, different payload.
        """

        with self._locks.hold(event.identity):
            inserted = self.db.append_event(event, on_insert=project_event)
        if not inserted:
            logger.debug("duplicate %s ignored", event.natural_key)
            return False

        logger.debug("applied %s %s at %s", event.kind, event.identity, event.position)
        self._route(event)
        self._notify(event)
        return True

    def _ingest(self, obj: Any, stats: IngestStats) -> None:
        try:
            event = coerce_event(obj)
        except MalformedEventError as e:
            stats.skipped += 1
            logger.warning("skipping malformed event: %s", e)
            return
        self._apply_counted(event, stats)

    def _apply_counted(self, event: AnyEvent, stats: IngestStats) -> None:
        try:
            if self.apply(event):
                stats.applied += 1
            else:
                stats.duplicates += 1
        except DedupeConflictError as e:
            stats.conflicts += 1
            logger.warning("skipping conflicting re-delivery: %s", e)

    def ingest_live(self, obj: Any) -> bool:
        """Apply one event pushed by a live subscription. Never raises for bad input."""

        stats = IngestStats()
        self._ingest(obj, stats)
        return stats.applied == 1

    def _require_ledger(self) -> LedgerSource:
        if self.ledger is None:
            raise ConfigError("ingestion pipeline has no ledger source")
        return self.ledger

    def backfill(self, from_block: int, to_block: int | None = None) -> IngestStats:
        """Fetch and apply registry logs for ``[from_block, to_block]`` in chunks.

        The durable cursor advances after each chunk, so an interrupted backfill
        resumes where it stopped.

        Raises:
            LedgerUnavailableError: if the ledger cannot serve a chunk.
        """

        ledger = self._require_ledger()
        end_block = ledger.head_block() if to_block is None else int(to_block)
        stats = IngestStats()
        if from_block > end_block:
            return stats

        chunk = self.indexer.log_chunk_blocks
        for start in range(int(from_block), end_block + 1, chunk):
            end = min(start + chunk - 1, end_block)
            decoded: list[AnyEvent] = []
            for raw in ledger.get_logs(start, end):
                try:
                    decoded.append(coerce_event(raw))
                except MalformedEventError as e:
                    stats.skipped += 1
                    logger.warning("skipping malformed log in blocks %d-%d: %s", start, end, e)

            decoded.sort(key=lambda ev: ev.position)
            for ev in decoded:
                self._apply_counted(ev, stats)

            cursor = self.db.get_cursor()
            if cursor is None or end > cursor:
                self.db.set_cursor(end)
            stats.last_block = end
            logger.info("synced blocks %d-%d: %d events (%d new)", start, end, len(decoded), stats.applied)
        return stats

    def sync(self) -> IngestStats:
        """Backfill from the durable cursor to ``head - confirmations``."""

        with self._sync_lock:
            ledger = self._require_ledger()
            target = ledger.head_block() - int(self.indexer.confirmations)
            cursor = self.db.get_cursor()
            start = self.indexer.start_block if cursor is None else cursor + 1
            if target < start:
                return IngestStats(last_block=cursor)
            return self.backfill(start, target)


class LedgerFollower:
    """Polls the ledger and keeps the journal current until stopped."""

    def __init__(self, pipeline: IngestionPipeline, *, poll_interval_s: float | None = None) -> None:
        self._pipeline = pipeline
        self._interval = pipeline.indexer.poll_interval_s if poll_interval_s is None else float(poll_interval_s)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.totals = IngestStats()
        self.rounds = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="chronodid-follower", daemon=True)
        self._thread.start()

    def stop(self, timeout_s: float | None = None) -> None:
        """Stop polling. An in-flight sync finishes first."""

        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout_s)
            self._thread = None

    def run_once(self) -> IngestStats:
        stats = self._pipeline.sync()
        self.totals.merge(stats)
        self.rounds += 1
        return stats

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except LedgerUnavailableError as e:
                logger.warning("ledger unavailable, retrying in %.1fs: %s", self._interval, e)
            except Exception:  # noqa: BLE001
                logger.exception("sync round failed, retrying in %.1fs", self._interval)
            self._stop.wait(self._interval)
