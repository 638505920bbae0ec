"""chronodid.core.database

The journal: append-only registry events keyed by their natural key, plus the
projection tables derived from them.

The events table is the source of truth. Projections are rebuilt from it on demand.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from chronodid.core.events import (
    AttributeChanged,
    DelegateChanged,
    OwnerChanged,
    Position,
    canonical_json,
    parse_event,
    payload_hash,
)
from chronodid.core.exceptions import DedupeConflictError, EventStoreError, InvalidInputError

AnyEvent = OwnerChanged | DelegateChanged | AttributeChanged

SCHEMA = """
-- ============================================================
-- Schema Version Tracking
-- ============================================================
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now'))
);

-- ============================================================
-- Registry Events (append-only, natural-key dedupe)
-- ============================================================
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    natural_key TEXT NOT NULL UNIQUE,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    transaction_hash TEXT NOT NULL,
    kind TEXT NOT NULL CHECK(kind IN ('OwnerChanged', 'DelegateChanged', 'AttributeChanged')),
    identity TEXT NOT NULL,
    payload TEXT NOT NULL,
    payload_hash TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_events_identity_pos ON events(identity, block_number, log_index);
CREATE INDEX IF NOT EXISTS idx_events_pos ON events(block_number, log_index);

-- ============================================================
-- Identity projection (controller NULL = self-owned)
-- ============================================================
CREATE TABLE IF NOT EXISTS identities (
    address TEXT PRIMARY KEY,
    controller TEXT,
    block_number INTEGER NOT NULL DEFAULT -1,
    log_index INTEGER NOT NULL DEFAULT -1,
    updated_at TEXT DEFAULT (datetime('now'))
);

-- ============================================================
-- Delegate projection
-- ============================================================
CREATE TABLE IF NOT EXISTS delegates (
    identity TEXT NOT NULL,
    delegate_type TEXT NOT NULL,
    delegate TEXT NOT NULL,
    valid_to INTEGER NOT NULL,
    first_block INTEGER NOT NULL,
    first_log_index INTEGER NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    updated_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (identity, delegate_type, delegate)
);

-- ============================================================
-- Attribute projection
-- ============================================================
CREATE TABLE IF NOT EXISTS attributes (
    identity TEXT NOT NULL,
    name TEXT NOT NULL,
    value TEXT NOT NULL,
    valid_to INTEGER NOT NULL,
    first_block INTEGER NOT NULL,
    first_log_index INTEGER NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    updated_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (identity, name)
);

-- ============================================================
-- Credentials (validity is computed; only revocation is stored)
-- ============================================================
CREATE TABLE IF NOT EXISTS credentials (
    id TEXT PRIMARY KEY,
    issuer TEXT NOT NULL,
    subject TEXT NOT NULL,
    type TEXT NOT NULL,
    claims TEXT NOT NULL,
    issuance_date TEXT NOT NULL,
    expiration_date TEXT,
    proof TEXT NOT NULL,
    revoked INTEGER NOT NULL DEFAULT 0,
    revoked_at TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_credentials_issuer ON credentials(issuer);
CREATE INDEX IF NOT EXISTS idx_credentials_subject ON credentials(subject);

-- ============================================================
-- Sync cursor (last durably applied block)
-- ============================================================
CREATE TABLE IF NOT EXISTS sync_state (
    name TEXT PRIMARY KEY,
    value INTEGER NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);

-- ============================================================
-- Live-update webhook subscriptions
-- ============================================================
CREATE TABLE IF NOT EXISTS webhook_subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL,
    event_globs TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT (datetime('now'))
);
"""

SCHEMA_VERSION = 1

CURSOR_LAST_BLOCK = "last_block"


@dataclass(frozen=True)
class EventPage:
    """One page of the event history, newest first."""

    events: list[AnyEvent]
    total: int
    limit: int
    offset: int


def _dt_to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


@dataclass
class Database:
    """Event-sourced SQLite store for registry events and their projections."""

    db_path: Path

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction on the shared connection."""

        with self._lock, self.conn:
            yield self.conn

    def _init_schema(self) -> None:
        with self.conn:
            self.conn.executescript(SCHEMA)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")
            self.conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append_event(
        self,
        event: AnyEvent,
        *,
        on_insert: Callable[[sqlite3.Connection, AnyEvent], None] | None = None,
    ) -> bool:
        """Append a single event.

        Dedup semantics:
        - If natural_key is new: insert, then run ``on_insert`` in the same transaction.
        - If natural_key exists with same payload_hash: idempotent (returns False).
        - If natural_key exists with different payload_hash: conflict.
        """

        payload = event.payload()
        p_hash = payload_hash({"identity": event.identity, **payload})
        key = event.natural_key

        with self._lock:
            row = self.conn.execute(
                "SELECT payload_hash FROM events WHERE natural_key = ?", (key,)
            ).fetchone()
            if row is not None:
                if str(row[0]) != p_hash:
                    raise DedupeConflictError(f"natural key conflict for {key}: payload changed")
                return False

            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO events (
                            natural_key, block_number, log_index, transaction_hash, kind,
                            identity, payload, payload_hash
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            key,
                            event.block_number,
                            event.log_index,
                            event.transaction_hash,
                            str(event.kind),
                            event.identity,
                            canonical_json(payload),
                            p_hash,
                        ),
                    )
                    if on_insert is not None:
                        on_insert(self.conn, event)
            except sqlite3.IntegrityError as e:
                raise EventStoreError(str(e)) from e
            return True

    def has_event(self, natural_key: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM events WHERE natural_key = ?", (natural_key,)
        ).fetchone()
        return row is not None

    def identity_events(self, identity: str, *, up_to: Position | None = None) -> list[AnyEvent]:
        """Events for one identity in log order, optionally bounded by ``up_to`` (inclusive)."""

        q = "SELECT * FROM events WHERE identity = ?"
        params: list[Any] = [identity]
        if up_to is not None:
            q += " AND (block_number < ? OR (block_number = ? AND log_index <= ?))"
            params.extend([up_to.block, up_to.block, up_to.log_index])
        q += " ORDER BY block_number ASC, log_index ASC"
        rows = self.conn.execute(q, tuple(params)).fetchall()
        return [self._row_to_event(r) for r in rows]

    def iter_events_ascending(self, *, identity: str | None = None) -> list[AnyEvent]:
        q = "SELECT * FROM events"
        params: tuple[Any, ...] = ()
        if identity is not None:
            q += " WHERE identity = ?"
            params = (identity,)
        q += " ORDER BY block_number ASC, log_index ASC"
        return [self._row_to_event(r) for r in self.conn.execute(q, params).fetchall()]

    def list_events(self, *, identity: str | None = None, limit: int = 10, offset: int = 0) -> EventPage:
        """Event history in reverse log order, optionally for one identity."""

        if limit < 1 or offset < 0:
            raise InvalidInputError(f"limit must be >= 1 and offset >= 0, got {limit}/{offset}")
        where = ""
        params: list[Any] = []
        if identity is not None:
            where = " WHERE identity = ?"
            params.append(identity)
        total = self.conn.execute(f"SELECT COUNT(*) FROM events{where}", tuple(params)).fetchone()[0]
        rows = self.conn.execute(
            f"SELECT * FROM events{where} ORDER BY block_number DESC, log_index DESC LIMIT ? OFFSET ?",
            (*params, int(limit), int(offset)),
        ).fetchall()
        return EventPage(
            events=[self._row_to_event(r) for r in rows], total=int(total), limit=int(limit), offset=int(offset)
        )

    def known_identities(self) -> list[str]:
        rows = self.conn.execute(
            "SELECT identity FROM events UNION SELECT address FROM identities ORDER BY 1"
        ).fetchall()
        return [str(r[0]) for r in rows]

    def event_stats(self) -> dict[str, int]:
        total = self.conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]
        by_kind = {
            str(r[0]): int(r[1])
            for r in self.conn.execute("SELECT kind, COUNT(*) FROM events GROUP BY kind").fetchall()
        }
        identities = self.conn.execute("SELECT COUNT(DISTINCT identity) FROM events").fetchone()[0]
        return {
            "total_events": int(total),
            "owner_changes": by_kind.get("OwnerChanged", 0),
            "delegate_changes": by_kind.get("DelegateChanged", 0),
            "attribute_changes": by_kind.get("AttributeChanged", 0),
            "unique_identities": int(identities),
        }

    def _row_to_event(self, row: sqlite3.Row) -> AnyEvent:
        try:
            payload = json.loads(row["payload"])
            return parse_event(
                {
                    **payload,
                    "kind": str(row["kind"]),
                    "block_number": int(row["block_number"]),
                    "log_index": int(row["log_index"]),
                    "transaction_hash": str(row["transaction_hash"]),
                    "identity": str(row["identity"]),
                }
            )
        except (ValueError, TypeError) as e:
            raise EventStoreError(f"corrupt event row {row['natural_key']}: {e}") from e

    # ------------------------------------------------------------------
    # Projections (read side; writes happen inside append_event)
    # ------------------------------------------------------------------

    def get_identity_row(self, address: str) -> sqlite3.Row | None:
        return self.conn.execute(
            "SELECT * FROM identities WHERE address = ?", (address,)
        ).fetchone()

    def get_delegate_rows(self, address: str) -> list[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM delegates WHERE identity = ? ORDER BY first_block ASC, first_log_index ASC",
            (address,),
        ).fetchall()

    def get_attribute_rows(self, address: str) -> list[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM attributes WHERE identity = ? ORDER BY first_block ASC, first_log_index ASC",
            (address,),
        ).fetchall()

    # ------------------------------------------------------------------
    # Sync cursor
    # ------------------------------------------------------------------

    def get_cursor(self, name: str = CURSOR_LAST_BLOCK) -> int | None:
        row = self.conn.execute("SELECT value FROM sync_state WHERE name = ?", (name,)).fetchone()
        return None if row is None else int(row[0])

    def set_cursor(self, value: int, name: str = CURSOR_LAST_BLOCK) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO sync_state (name, value) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET value = excluded.value, updated_at = datetime('now')
                """,
                (name, int(value)),
            )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def insert_credential(
        self,
        *,
        credential_id: str,
        issuer: str,
        subject: str,
        types: Iterable[str],
        claims: dict[str, Any],
        issuance_date: str,
        expiration_date: str | None,
        proof: dict[str, Any],
    ) -> None:
        # claims keep insertion order: it is part of the signed payload.
        with self._lock:
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO credentials (
                            id, issuer, subject, type, claims, issuance_date, expiration_date, proof
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            credential_id,
                            issuer,
                            subject,
                            json.dumps(list(types), ensure_ascii=False),
                            json.dumps(claims, ensure_ascii=False),
                            issuance_date,
                            expiration_date,
                            json.dumps(proof, sort_keys=True, ensure_ascii=False),
                        ),
                    )
            except sqlite3.IntegrityError as e:
                raise EventStoreError(str(e)) from e

    def get_credential_row(self, credential_id: str) -> sqlite3.Row | None:
        return self.conn.execute(
            "SELECT * FROM credentials WHERE id = ?", (credential_id,)
        ).fetchone()

    def find_credential_rows(
        self, *, issuer: str | None = None, subject: str | None = None, limit: int = 100
    ) -> list[sqlite3.Row]:
        q = "SELECT * FROM credentials WHERE 1=1"
        params: list[Any] = []
        if issuer is not None:
            q += " AND issuer = ?"
            params.append(issuer)
        if subject is not None:
            q += " AND subject = ?"
            params.append(subject)
        q += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return self.conn.execute(q, tuple(params)).fetchall()

    def mark_credential_revoked(self, credential_id: str, *, at: datetime) -> bool:
        with self._lock, self.conn:
            cur = self.conn.execute(
                "UPDATE credentials SET revoked = 1, revoked_at = ? WHERE id = ? AND revoked = 0",
                (_dt_to_iso(at), credential_id),
            )
        return int(cur.rowcount) > 0
