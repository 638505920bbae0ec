"""chronodid.core.reconstructor

Historical state is a left fold over a prefix of the event log.

``state_at`` is pure in (event log, identity, position): it never consults projections,
so the answer for a past position cannot drift as new events arrive.
"""

from __future__ import annotations

import threading

from chronodid.core.cache import MemoCache
from chronodid.core.database import Database
from chronodid.core.events import Position, normalize_address
from chronodid.core.exceptions import InvalidInputError
from chronodid.core.projections import IdentityState, fold_events


def as_position(position: int | Position) -> Position:
    """A bare block number means "after every event in that block"."""

    if isinstance(position, Position):
        if position.block < 0 or position.log_index < 0:
            raise InvalidInputError(f"invalid position {position}")
        return position
    if isinstance(position, bool) or not isinstance(position, int):
        raise InvalidInputError(f"position must be a block number or Position, got {position!r}")
    if position < 0:
        raise InvalidInputError(f"block number must be >= 0, got {position}")
    return Position.end_of_block(position)


class StateReconstructor:
    def __init__(self, db: Database, *, max_entries: int = 4096) -> None:
        self._db = db
        self._memo = MemoCache(max_entries=max_entries)
        # Bumped by invalidate; a replay only memoizes if its identity was not bumped meanwhile.
        self._generations: dict[str, int] = {}
        self._gen_lock = threading.Lock()
        self.replays = 0

    def state_at(self, identity: str, position: int | Position) -> IdentityState:
        addr = normalize_address(identity)
        pos = as_position(position)
        key = (addr, pos)

        cached = self._memo.get(key)
        if cached is not None:
            return cached

        with self._gen_lock:
            generation = self._generations.get(addr, 0)

        events = self._db.identity_events(addr, up_to=pos)
        self.replays += 1
        state = fold_events(addr, events)

        with self._gen_lock:
            if self._generations.get(addr, 0) == generation:
                self._memo.set(key, state)
        return state

    def invalidate(self, identity: str) -> int:
        """Forget every memoized state of ``identity``. Called when one of its events lands."""

        addr = normalize_address(identity)
        with self._gen_lock:
            self._generations[addr] = self._generations.get(addr, 0) + 1
            return self._memo.invalidate_where(lambda k: isinstance(k, tuple) and k[0] == addr)
