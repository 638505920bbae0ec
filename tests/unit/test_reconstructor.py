from __future__ import annotations

from pathlib import Path

import pytest

from chronodid.core.database import Database
from chronodid.core.events import Position, parse_event
from chronodid.core.exceptions import InvalidInputError
from chronodid.core.ingestion import IngestionPipeline
from chronodid.core.projections import fold_events, project_event, projected_state
from chronodid.core.reconstructor import StateReconstructor, as_position
from tests.unit._ledger import addr, delegate_changed, owner_changed

X = addr(1)


def _db(temp_dir: Path, raws: list[dict]) -> Database:
    db = Database(temp_dir / "chronodid.db")
    for raw in raws:
        db.append_event(parse_event(raw), on_insert=project_event)
    return db




def test_state_at_positions(temp_dir: Path) -> None:
    db = _db(temp_dir, [owner_changed(X, addr(2), 10), owner_changed(X, addr(3), 20)])
    try:
        r = StateReconstructor(db)
        assert r.state_at(X, 5).owner == X
        assert r.state_at(X, 10).owner == addr(2)
        assert r.state_at(X, 15).owner == addr(2)
        assert r.state_at(X, 25).owner == addr(3)
        assert r.state_at(X, Position(20, 0)).owner == addr(3)
        assert r.state_at(X, Position(19, 5)).owner == addr(2)
    finally:
        db.close()


def test_block_number_includes_every_event_in_that_block(temp_dir: Path) -> None:
    db = _db(temp_dir, [owner_changed(X, addr(2), 10, 0), owner_changed(X, addr(3), 10, 7)])
    try:
        r = StateReconstructor(db)
        assert r.state_at(X, 10).owner == addr(3)
        assert r.state_at(X, Position(10, 0)).owner == addr(2)
    finally:
        db.close()


def test_latest_state_equals_projection(temp_dir: Path) -> None:
    raws = [
        owner_changed(X, addr(2), 10),
        delegate_changed(X, addr(4), 5000, 11),
        delegate_changed(X, addr(5), 7000, 12, delegate_type="veriKey"),
        delegate_changed(X, addr(4), 100, 13),
    ]
    db = _db(temp_dir, raws)
    try:
        r = StateReconstructor(db)
        assert r.state_at(X, 10**9) == projected_state(db, X)
    finally:
        db.close()


def test_monotonic_replay_uses_prefixes(temp_dir: Path) -> None:
    raws = [owner_changed(X, addr(b), b) for b in (3, 7, 11, 19)]
    db = _db(temp_dir, raws)
    try:
        r = StateReconstructor(db)
        events = db.identity_events(X)
        for p in range(0, 25):
            prefix = [e for e in events if e.block_number <= p]
            assert r.state_at(X, p) == fold_events(X, prefix)
    finally:
        db.close()


def test_memo_is_hit_and_invalidated(temp_dir: Path) -> None:
    db = _db(temp_dir, [owner_changed(X, addr(2), 10)])
    try:
        r = StateReconstructor(db)
        r.state_at(X, 50)
        r.state_at(X, 50)
        assert r.replays == 1

        db.append_event(parse_event(owner_changed(X, addr(3), 40)), on_insert=project_event)
        assert r.invalidate(X) == 1
        assert r.state_at(X, 50).owner == addr(3)
        assert r.replays == 2
    finally:
        db.close()


def test_bad_positions_are_invalid_input() -> None:
    with pytest.raises(InvalidInputError):
        as_position(-1)
    with pytest.raises(InvalidInputError):
        as_position(True)
    with pytest.raises(InvalidInputError):
        as_position("12")  # type: ignore[arg-type]
    assert as_position(7) == Position.end_of_block(7)


def test_write_landing_mid_replay_is_not_memoized_stale(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db = _db(temp_dir, [owner_changed(X, addr(2), 10)])
    try:
        r = StateReconstructor(db)
        pipeline = IngestionPipeline(db=db)
        pipeline.register_handler(lambda ev: r.invalidate(ev.identity))
        read_events = db.identity_events

        def read_then_write(identity: str, *, up_to: Position | None = None) -> list:
            events = read_events(identity, up_to=up_to)
            monkeypatch.setattr(db, "identity_events", read_events)
            pipeline.apply(parse_event(owner_changed(X, addr(3), 40)))
            return events

        monkeypatch.setattr(db, "identity_events", read_then_write)

        assert r.state_at(X, 50).owner == addr(2)
        assert r.state_at(X, 50).owner == addr(3)
    finally:
        db.close()
