"""chronodid.ledger

Everything the core needs from a chain, and nothing more:
head, block timestamps, registry logs.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class LedgerSource(Protocol):
    def head_block(self) -> int: ...

    def block_timestamp(self, block_number: int) -> int: ...

    def get_logs(self, from_block: int, to_block: int) -> list[Any]: ...


__all__ = ["LedgerSource"]
