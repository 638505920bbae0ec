"""chronodid.core.events

The event contract is the primitive.

Three kinds of change, one total order. Every event is addressed by its ledger position
``(block_number, log_index)`` and identified by a natural key that survives re-delivery.
"""

from __future__ import annotations

import hashlib
import json
import re
from enum import StrEnum
from typing import Annotated, Any, Literal, NamedTuple

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from chronodid.core.exceptions import InvalidInputError, MalformedEventError

# SQLite integers are signed 64-bit. uint256 validity windows beyond this are "forever".
VALID_TO_MAX = 2**63 - 1
MAX_LOG_INDEX = 2**31 - 1

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


class EventKind(StrEnum):
    """Registry event kinds, named after the contract's events minus the ``DID`` prefix."""

    OWNER_CHANGED = "OwnerChanged"
    DELEGATE_CHANGED = "DelegateChanged"
    ATTRIBUTE_CHANGED = "AttributeChanged"


class Position(NamedTuple):
    """Ledger position. Tuple ordering is the event log's total order."""

    block: int
    log_index: int

    @classmethod
    def end_of_block(cls, block: int) -> Position:
        return cls(int(block), MAX_LOG_INDEX)

    def __str__(self) -> str:
        return f"{self.block}:{self.log_index}"


def normalize_address(value: str) -> str:
    """Lower-case ``0x`` + 40 hex digits, or :class:`InvalidInputError`."""

    s = str(value).strip().lower()
    if not s.startswith("0x"):
        s = "0x" + s
    if not _ADDRESS_RE.match(s):
        raise InvalidInputError(f"expected 20-byte hex address, got {value!r}")
    return s


def canonical_json(data: Any) -> str:
    """Canonical JSON serialization used for hashing and dedupe."""

    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def payload_hash(payload: dict[str, Any]) -> str:
    """SHA-256 hash of canonical payload JSON."""

    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


class _EventBase(BaseModel):
    block_number: int = Field(ge=0)
    log_index: int = Field(ge=0, le=MAX_LOG_INDEX)
    transaction_hash: str
    identity: str
    previous_change: int = Field(default=0, ge=0)

    model_config = {"frozen": True}

    @field_validator("identity")
    @classmethod
    def _identity_is_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("transaction_hash")
    @classmethod
    def _tx_hash_is_hex32(cls, v: str) -> str:
        s = str(v).lower()
        if not _TX_HASH_RE.match(s):
            raise ValueError(f"expected 32-byte transaction hash, got {v!r}")
        return s

    @property
    def position(self) -> Position:
        return Position(self.block_number, self.log_index)

    @property
    def natural_key(self) -> str:
        """Dedupe key: ``{transaction_hash}:{kind}:{block}:{log_index}``."""

        kind = getattr(self, "kind")
        return f"{self.transaction_hash}:{kind}:{self.block_number}:{self.log_index}"

    def payload(self) -> dict[str, Any]:
        """Kind-specific fields only (position and identity live in their own columns)."""

        return self.model_dump(
            mode="json",
            exclude={"block_number", "log_index", "transaction_hash", "identity", "kind"},
        )


def _clamp_valid_to(v: int) -> int:
    v = int(v)
    if v < 0:
        raise ValueError("valid_to must be non-negative")
    return min(v, VALID_TO_MAX)


class OwnerChanged(_EventBase):
    kind: Literal["OwnerChanged"] = "OwnerChanged"
    owner: str

    @field_validator("owner")
    @classmethod
    def _owner_is_address(cls, v: str) -> str:
        return normalize_address(v)


class DelegateChanged(_EventBase):
    kind: Literal["DelegateChanged"] = "DelegateChanged"
    delegate_type: str = Field(min_length=1)
    delegate: str
    valid_to: int

    @field_validator("delegate")
    @classmethod
    def _delegate_is_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("valid_to", mode="before")
    @classmethod
    def _valid_to_fits(cls, v: Any) -> int:
        return _clamp_valid_to(v)


class AttributeChanged(_EventBase):
    kind: Literal["AttributeChanged"] = "AttributeChanged"
    name: str = Field(min_length=1)
    value: str
    valid_to: int

    @field_validator("valid_to", mode="before")
    @classmethod
    def _valid_to_fits(cls, v: Any) -> int:
        return _clamp_valid_to(v)


LedgerEvent = Annotated[
    OwnerChanged | DelegateChanged | AttributeChanged,
    Field(discriminator="kind"),
]

_ledger_event_adapter: TypeAdapter[LedgerEvent] = TypeAdapter(LedgerEvent)


def parse_event(obj: Any) -> OwnerChanged | DelegateChanged | AttributeChanged:
    """Validate a dict (or already typed event) into the tagged union."""

    if isinstance(obj, OwnerChanged | DelegateChanged | AttributeChanged):
        return obj
    try:
        return _ledger_event_adapter.validate_python(obj)
    except ValidationError as e:
        raise MalformedEventError(f"malformed ledger event: {e.error_count()} error(s): {e}") from e
