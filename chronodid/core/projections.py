"""chronodid.core.projections

Materialized views from event replay.

Projections are derived state. The event log is the source of truth.
If projections are corrupted, they can be rebuilt from event replay, and
:func:`verify_projections` proves that they were not.

Last write wins per key, where "last" means greatest ledger position, not arrival order.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from typing import assert_never

from chronodid.core.database import AnyEvent, Database
from chronodid.core.events import AttributeChanged, DelegateChanged, OwnerChanged

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DelegateEntry:
    delegate_type: str
    delegate: str
    valid_to: int

    def is_valid_at(self, ts: int) -> bool:
        return self.valid_to > ts


@dataclass(frozen=True, slots=True)
class AttributeEntry:
    name: str
    value: str
    valid_to: int

    def is_valid_at(self, ts: int) -> bool:
        return self.valid_to > ts


@dataclass(frozen=True, slots=True)
class IdentityState:
    """Owner, delegates and attributes of one identity, in first-seen order.

    Entries are not filtered by validity; see :func:`valid_delegates`.
    """

    identity: str
    owner: str
    delegates: tuple[DelegateEntry, ...] = ()
    attributes: tuple[AttributeEntry, ...] = ()

    @property
    def is_self_owned(self) -> bool:
        return self.owner == self.identity


def fold_events(identity: str, events: Iterable[AnyEvent]) -> IdentityState:
    """Replay ``events`` (already in log order) into the state of ``identity``."""

    owner = identity
    delegates: dict[tuple[str, str], DelegateEntry] = {}
    attributes: dict[str, AttributeEntry] = {}

    for ev in events:
        if ev.identity != identity:
            continue
        match ev:
            case OwnerChanged():
                owner = ev.owner
            case DelegateChanged():
                # Re-assignment keeps the key's original (first-seen) slot.
                delegates[(ev.delegate_type, ev.delegate)] = DelegateEntry(
                    delegate_type=ev.delegate_type, delegate=ev.delegate, valid_to=ev.valid_to
                )
            case AttributeChanged():
                attributes[ev.name] = AttributeEntry(name=ev.name, value=ev.value, valid_to=ev.valid_to)
            case _:
                assert_never(ev)

    return IdentityState(
        identity=identity,
        owner=owner,
        delegates=tuple(delegates.values()),
        attributes=tuple(attributes.values()),
    )


def valid_delegates(state: IdentityState, at_ts: int) -> list[DelegateEntry]:
    return [d for d in state.delegates if d.is_valid_at(at_ts)]


def valid_attributes(state: IdentityState, at_ts: int) -> list[AttributeEntry]:
    return [a for a in state.attributes if a.is_valid_at(at_ts)]


# -----------------
# Write side
# -----------------


def _newer(table: str) -> str:
    return (
        f"(excluded.block_number > {table}.block_number OR "
        f"(excluded.block_number = {table}.block_number AND excluded.log_index > {table}.log_index))"
    )


def _earlier(table: str) -> str:
    return (
        f"(excluded.first_block < {table}.first_block OR "
        f"(excluded.first_block = {table}.first_block AND excluded.first_log_index < {table}.first_log_index))"
    )


_UPSERT_OWNER = f"""
INSERT INTO identities (address, controller, block_number, log_index) VALUES (?, ?, ?, ?)
ON CONFLICT(address) DO UPDATE SET
    controller = excluded.controller,
    block_number = excluded.block_number,
    log_index = excluded.log_index,
    updated_at = datetime('now')
WHERE {_newer("identities")}
"""

_UPSERT_DELEGATE = f"""
INSERT INTO delegates (
    identity, delegate_type, delegate, valid_to, first_block, first_log_index, block_number, log_index
) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(identity, delegate_type, delegate) DO UPDATE SET
    valid_to = CASE WHEN {_newer("delegates")} THEN excluded.valid_to ELSE delegates.valid_to END,
    block_number = CASE WHEN {_newer("delegates")} THEN excluded.block_number ELSE delegates.block_number END,
    log_index = CASE WHEN {_newer("delegates")} THEN excluded.log_index ELSE delegates.log_index END,
    first_block = CASE WHEN {_earlier("delegates")} THEN excluded.first_block ELSE delegates.first_block END,
    first_log_index = CASE WHEN {_earlier("delegates")}
        THEN excluded.first_log_index ELSE delegates.first_log_index END,
    updated_at = datetime('now')
"""

_UPSERT_ATTRIBUTE = f"""
INSERT INTO attributes (
    identity, name, value, valid_to, first_block, first_log_index, block_number, log_index
) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(identity, name) DO UPDATE SET
    value = CASE WHEN {_newer("attributes")} THEN excluded.value ELSE attributes.value END,
    valid_to = CASE WHEN {_newer("attributes")} THEN excluded.valid_to ELSE attributes.valid_to END,
    block_number = CASE WHEN {_newer("attributes")} THEN excluded.block_number ELSE attributes.block_number END,
    log_index = CASE WHEN {_newer("attributes")} THEN excluded.log_index ELSE attributes.log_index END,
    first_block = CASE WHEN {_earlier("attributes")} THEN excluded.first_block ELSE attributes.first_block END,
    first_log_index = CASE WHEN {_earlier("attributes")}
        THEN excluded.first_log_index ELSE attributes.first_log_index END,
    updated_at = datetime('now')
"""


def project_event(conn: sqlite3.Connection, event: AnyEvent) -> None:
    """Apply one event to the projection tables. Runs inside the caller's transaction."""

    conn.execute("INSERT OR IGNORE INTO identities (address) VALUES (?)", (event.identity,))
    match event:
        case OwnerChanged():
            conn.execute(
                _UPSERT_OWNER, (event.identity, event.owner, event.block_number, event.log_index)
            )
        case DelegateChanged():
            conn.execute(
                _UPSERT_DELEGATE,
                (
                    event.identity,
                    event.delegate_type,
                    event.delegate,
                    event.valid_to,
                    event.block_number,
                    event.log_index,
                    event.block_number,
                    event.log_index,
                ),
            )
        case AttributeChanged():
            conn.execute(
                _UPSERT_ATTRIBUTE,
                (
                    event.identity,
                    event.name,
                    event.value,
                    event.valid_to,
                    event.block_number,
                    event.log_index,
                    event.block_number,
                    event.log_index,
                ),
            )
        case _:
            assert_never(event)


# -----------------
# Read side
# -----------------


def projected_state(db: Database, identity: str) -> IdentityState:
    """Current state straight from the projection tables.

    An identity with no projection row is self-owned with no delegates or attributes.
    """

    row = db.get_identity_row(identity)
    owner = identity if row is None or row["controller"] is None else str(row["controller"])
    delegates = tuple(
        DelegateEntry(delegate_type=str(r["delegate_type"]), delegate=str(r["delegate"]), valid_to=int(r["valid_to"]))
        for r in db.get_delegate_rows(identity)
    )
    attributes = tuple(
        AttributeEntry(name=str(r["name"]), value=str(r["value"]), valid_to=int(r["valid_to"]))
        for r in db.get_attribute_rows(identity)
    )
    return IdentityState(identity=identity, owner=owner, delegates=delegates, attributes=attributes)


def rebuild_projections(db: Database) -> int:
    """Drop and replay every projection from the event log. Returns events replayed."""

    events = db.iter_events_ascending()
    with db.transaction() as conn:
        conn.execute("DELETE FROM identities")
        conn.execute("DELETE FROM delegates")
        conn.execute("DELETE FROM attributes")
        for ev in events:
            project_event(conn, ev)
    logger.info("rebuilt projections from %d events", len(events))
    return len(events)


def verify_projections(db: Database) -> list[str]:
    """Identities whose projection differs from a full replay of their events."""

    mismatched: list[str] = []
    for identity in db.known_identities():
        replayed = fold_events(identity, db.identity_events(identity))
        if replayed != projected_state(db, identity):
            mismatched.append(identity)
    if mismatched:
        logger.warning("projection drift for %d identities", len(mismatched))
    return mismatched
