"""chronodid.ledger.abi

EthereumDIDRegistry log decoding.

Lightweight on purpose: the three registry events are fixed-layout ABI words
(plus one dynamic ``bytes``), so no web3 dependency is needed.
"""

from __future__ import annotations

from typing import Any

from eth_utils import keccak

from chronodid.core.events import (
    AttributeChanged,
    DelegateChanged,
    EventKind,
    OwnerChanged,
    parse_event,
)
from chronodid.core.exceptions import MalformedEventError

OWNER_CHANGED_SIGNATURE = "DIDOwnerChanged(address,address,uint256)"
DELEGATE_CHANGED_SIGNATURE = "DIDDelegateChanged(address,bytes32,address,uint256,uint256)"
ATTRIBUTE_CHANGED_SIGNATURE = "DIDAttributeChanged(address,bytes32,bytes,uint256,uint256)"


def event_topic(signature: str) -> str:
    return "0x" + keccak(text=signature).hex()


TOPIC_OWNER_CHANGED = event_topic(OWNER_CHANGED_SIGNATURE)
TOPIC_DELEGATE_CHANGED = event_topic(DELEGATE_CHANGED_SIGNATURE)
TOPIC_ATTRIBUTE_CHANGED = event_topic(ATTRIBUTE_CHANGED_SIGNATURE)

REGISTRY_TOPICS: dict[str, EventKind] = {
    TOPIC_OWNER_CHANGED: EventKind.OWNER_CHANGED,
    TOPIC_DELEGATE_CHANGED: EventKind.DELEGATE_CHANGED,
    TOPIC_ATTRIBUTE_CHANGED: EventKind.ATTRIBUTE_CHANGED,
}

_WORD = 32


def _hex_bytes(value: Any, *, field: str) -> bytes:
    s = str(value or "")
    try:
        return bytes.fromhex(s.removeprefix("0x"))
    except ValueError as e:
        raise MalformedEventError(f"{field} is not hex: {s[:20]!r}") from e


def _hex_int(value: Any, *, field: str) -> int:
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 16)
    except (TypeError, ValueError) as e:
        raise MalformedEventError(f"{field} is not a hex quantity: {value!r}") from e


def _word(data: bytes, i: int) -> bytes:
    chunk = data[i * _WORD : (i + 1) * _WORD]
    if len(chunk) != _WORD:
        raise MalformedEventError(f"log data truncated at word {i}")
    return chunk


def _word_address(w: bytes) -> str:
    if any(w[:12]):
        raise MalformedEventError("address word has non-zero padding")
    return "0x" + w[12:].hex()


def decode_bytes32_string(w: bytes) -> str:
    """Right-padded bytes32 → text; falls back to ``0x`` hex when not UTF-8."""

    raw = w.rstrip(b"\x00")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return "0x" + w.hex()


def decode_attribute_value(raw: bytes) -> str:
    """Attribute bytes → text when valid UTF-8, otherwise ``0x`` hex."""

    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return "0x" + raw.hex()


def _dynamic_bytes(data: bytes, offset: int) -> bytes:
    if offset % _WORD or offset + _WORD > len(data):
        raise MalformedEventError(f"bad dynamic offset {offset}")
    length = int.from_bytes(data[offset : offset + _WORD], "big")
    start = offset + _WORD
    if start + length > len(data):
        raise MalformedEventError("dynamic bytes overrun log data")
    return data[start : start + length]


def decode_log(log: dict[str, Any]) -> OwnerChanged | DelegateChanged | AttributeChanged:
    """Decode one ``eth_getLogs`` entry into a typed registry event.

    Raises:
        MalformedEventError: unknown topic, removed log, or bad encoding.
    """

    topics = [str(t).lower() for t in (log.get("topics") or [])]
    if not topics:
        raise MalformedEventError("log has no topics")
    kind = REGISTRY_TOPICS.get(topics[0])
    if kind is None:
        raise MalformedEventError(f"unrecognized event topic {topics[0]}")
    if log.get("removed"):
        raise MalformedEventError("log was removed by a reorg")
    if len(topics) < 2:
        raise MalformedEventError("missing indexed identity topic")

    identity = _word_address(_hex_bytes(topics[1], field="topics[1]").rjust(_WORD, b"\x00"))
    data = _hex_bytes(log.get("data"), field="data")
    base: dict[str, Any] = {
        "kind": str(kind),
        "identity": identity,
        "block_number": _hex_int(log.get("blockNumber"), field="blockNumber"),
        "log_index": _hex_int(log.get("logIndex"), field="logIndex"),
        "transaction_hash": str(log.get("transactionHash") or ""),
    }

    match kind:
        case EventKind.OWNER_CHANGED:
            fields = {
                "owner": _word_address(_word(data, 0)),
                "previous_change": int.from_bytes(_word(data, 1), "big"),
            }
        case EventKind.DELEGATE_CHANGED:
            fields = {
                "delegate_type": decode_bytes32_string(_word(data, 0)),
                "delegate": _word_address(_word(data, 1)),
                "valid_to": int.from_bytes(_word(data, 2), "big"),
                "previous_change": int.from_bytes(_word(data, 3), "big"),
            }
        case EventKind.ATTRIBUTE_CHANGED:
            offset = int.from_bytes(_word(data, 1), "big")
            fields = {
                "name": decode_bytes32_string(_word(data, 0)),
                "value": decode_attribute_value(_dynamic_bytes(data, offset)),
                "valid_to": int.from_bytes(_word(data, 2), "big"),
                "previous_change": int.from_bytes(_word(data, 3), "big"),
            }

    return parse_event({**base, **fields})
