"""chronodid.did.resolver

The read surface: documents, owners and signer authority, now or at any past moment.

``at`` may be:
- an ``int`` block number (every event of that block included)
- a :class:`~chronodid.core.events.Position`
- a ``datetime`` or ISO-8601 string (mapped to the greatest block at or before it)

Validity windows are judged against the block's timestamp for block/position input and
against the given moment itself for time input.

When the ledger cannot anchor a moment, answers fall back to the latest known state,
are logged at WARNING and carry ``degraded=True`` where the result has room for it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel

from chronodid.core.blocktime import BlockTimeIndex
from chronodid.core.database import Database, EventPage
from chronodid.core.events import Position, normalize_address
from chronodid.core.exceptions import InvalidInputError, LedgerUnavailableError
from chronodid.core.projections import IdentityState, projected_state, valid_attributes, valid_delegates
from chronodid.core.reconstructor import StateReconstructor, as_position
from chronodid.core.time import parse_dt, to_unix, utc_now
from chronodid.did.document import DidDocument, address_from_did, build_document, did_for

logger = logging.getLogger(__name__)

At = int | Position | datetime | str


class OwnerInfo(BaseModel):
    did: str
    owner: str
    is_self_owned: bool


class DelegateListing(BaseModel):
    delegate_type: str
    delegate: str
    valid_to: int
    is_valid: bool


class AttributeListing(BaseModel):
    name: str
    value: str
    valid_to: int
    is_valid: bool


class Resolution(BaseModel):
    """A document plus how it was anchored.

    ``degraded`` means the ledger could not anchor ``at``: the document was built from
    the latest known state instead of the historical one.
    """

    document: DidDocument
    block: int | None = None
    reference_time: int
    degraded: bool = False


class SignerCheck(BaseModel):
    did: str
    address: str
    valid: bool
    block: int | None = None
    degraded: bool = False


class DidResolver:
    def __init__(
        self,
        db: Database,
        blocktime: BlockTimeIndex,
        *,
        reconstructor: StateReconstructor | None = None,
        chain_id: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._blocktime = blocktime
        self.reconstructor = reconstructor or StateReconstructor(db)
        self.chain_id = int(chain_id)
        self._clock = clock

    # ------------------------------------------------------------------
    # Temporal anchoring
    # ------------------------------------------------------------------

    def anchor(self, at: At) -> tuple[Position, int]:
        """``at`` → (ledger position, reference unix time for validity windows)."""

        if isinstance(at, str):
            at = parse_dt(at)
        if isinstance(at, datetime):
            ts = to_unix(at)
            return Position.end_of_block(self._blocktime.position_at_or_before(ts)), ts
        if isinstance(at, Position | int):
            pos = as_position(at)
            return pos, self._blocktime.timestamp_of(pos.block)
        raise InvalidInputError(f"unsupported point in time: {at!r}")

    def _now(self) -> int:
        return to_unix(self._clock())

    def _historical_state(
        self, address: str, at: At
    ) -> tuple[IdentityState, Position | None, int | None, bool]:
        """(state, position, reference time if already known, degraded).

        Block input replays without touching the ledger. Time input needs the ledger to
        find its block; when it is unreachable the latest projected state stands in.
        """

        if isinstance(at, str):
            at = parse_dt(at)
        if isinstance(at, datetime):
            ts = to_unix(at)
            try:
                pos = Position.end_of_block(self._blocktime.position_at_or_before(ts))
            except LedgerUnavailableError as e:
                logger.warning(
                    "DEGRADED resolution of %s at t=%d: cannot map time to block (%s); using latest state",
                    address,
                    ts,
                    e,
                )
                return projected_state(self._db, address), None, ts, True
            return self.reconstructor.state_at(address, pos), pos, ts, False
        if isinstance(at, Position | int) and not isinstance(at, bool):
            pos = as_position(at)
            return self.reconstructor.state_at(address, pos), pos, None, False
        raise InvalidInputError(f"unsupported point in time: {at!r}")

    def _block_time(self, address: str, pos: Position) -> tuple[int, bool]:
        try:
            return self._blocktime.timestamp_of(pos.block), False
        except LedgerUnavailableError as e:
            logger.warning(
                "DEGRADED resolution of %s at block %d: no block timestamp (%s); judging validity by the clock",
                address,
                pos.block,
                e,
            )
            return self._now(), True

    def _anchored(self, address: str, at: At) -> tuple[IdentityState, Position | None, int, bool]:
        state, pos, ts, degraded = self._historical_state(address, at)
        if ts is None:
            assert pos is not None
            ts, degraded = self._block_time(address, pos)
        return state, pos, ts, degraded

    def state(self, did: str, at: At | None = None) -> IdentityState:
        address = address_from_did(did)
        if at is None:
            return projected_state(self._db, address)
        return self._historical_state(address, at)[0]

    # ------------------------------------------------------------------
    # Exposed surface
    # ------------------------------------------------------------------

    def resolve_with_metadata(self, did: str, at: At | None = None) -> Resolution:
        """DID → document plus anchoring. Unseen identities resolve to a self-owned document."""

        address = address_from_did(did)
        if at is None:
            state, pos, ref_ts, degraded = projected_state(self._db, address), None, self._now(), False
        else:
            state, pos, ref_ts, degraded = self._anchored(address, at)
            logger.debug("resolving %s at %s (t=%d)", address, pos, ref_ts)

        document = build_document(
            address,
            state.owner,
            valid_delegates(state, ref_ts),
            valid_attributes(state, ref_ts),
            chain_id=self.chain_id,
        )
        return Resolution(
            document=document, block=None if pos is None else pos.block, reference_time=ref_ts, degraded=degraded
        )

    def resolve(self, did: str, at: At | None = None) -> DidDocument:
        return self.resolve_with_metadata(did, at).document

    def owner_at(self, did: str, at: At | None = None) -> str:
        return self.state(did, at).owner

    def owner(self, did: str) -> OwnerInfo:
        state = self.state(did)
        return OwnerInfo(did=did_for(state.identity), owner=state.owner, is_self_owned=state.is_self_owned)

    def check_signer(self, did: str, address: str, at: At) -> SignerCheck:
        """Was ``address`` the owner, or an unexpired delegate of any type, at ``at``?"""

        identity = address_from_did(did)
        signer = normalize_address(address)
        state, pos, ref_ts, degraded = self._anchored(identity, at)
        return SignerCheck(
            did=did_for(identity),
            address=signer,
            valid=holds_authority(state, signer, ref_ts),
            block=None if pos is None else pos.block,
            degraded=degraded,
        )

    def was_valid_signer_at(self, did: str, address: str, at: At) -> bool:
        return self.check_signer(did, address, at).valid

    def is_current_signer(self, did: str, address: str) -> bool:
        """Authority check against the live projection and the current clock."""

        signer = normalize_address(address)
        return holds_authority(self.state(did), signer, self._now())

    def delegates(self, did: str) -> list[DelegateListing]:
        now = self._now()
        return [
            DelegateListing(
                delegate_type=d.delegate_type, delegate=d.delegate, valid_to=d.valid_to, is_valid=d.is_valid_at(now)
            )
            for d in self.state(did).delegates
        ]

    def attributes(self, did: str) -> list[AttributeListing]:
        now = self._now()
        return [
            AttributeListing(name=a.name, value=a.value, valid_to=a.valid_to, is_valid=a.is_valid_at(now))
            for a in self.state(did).attributes
        ]

    def events(self, did: str | None = None, *, limit: int = 10, offset: int = 0) -> EventPage:
        """Registry event history, newest first; every identity when ``did`` is None."""

        identity = None if did is None else address_from_did(did)
        return self._db.list_events(identity=identity, limit=limit, offset=offset)


def holds_authority(state: IdentityState, signer: str, at_ts: int) -> bool:
    if state.owner == signer:
        return True
    return any(d.delegate == signer for d in valid_delegates(state, at_ts))
