"""chronodid.core.blocktime

Wall-clock time → ledger position.

Block timestamps are non-decreasing in block number, so the greatest block at or
before a moment is a binary search over ``[0, head]``. Timestamps of mined blocks are
immutable and memoized forever; the head moves and is cached briefly.
"""

from __future__ import annotations

import logging
from datetime import datetime

from chronodid.core.cache import MemoCache
from chronodid.core.config import CacheConfig
from chronodid.core.exceptions import InvalidInputError
from chronodid.core.time import to_unix
from chronodid.ledger import LedgerSource

logger = logging.getLogger(__name__)

_HEAD_KEY = "head"


class BlockTimeIndex:
    def __init__(self, ledger: LedgerSource, cache: CacheConfig | None = None) -> None:
        cfg = cache or CacheConfig()
        self._ledger = ledger
        self._head = MemoCache(max_entries=1, default_ttl_s=cfg.head_ttl_s)
        self._timestamps = MemoCache(max_entries=cfg.block_entries)
        self._answers = MemoCache(max_entries=cfg.block_entries)
        self.lookups = 0

    def head(self) -> int:
        return int(self._head.get_or_set(_HEAD_KEY, self._ledger.head_block))

    def timestamp_of(self, block_number: int) -> int:
        """Timestamp of ``block_number``; blocks above head are clamped to head."""

        if int(block_number) < 0:
            raise InvalidInputError(f"block number must be >= 0, got {block_number}")
        block = min(int(block_number), self.head())
        cached = self._timestamps.get(block)
        if cached is not None:
            return int(cached)
        self.lookups += 1
        ts = int(self._ledger.block_timestamp(block))
        self._timestamps.set(block, ts)
        return ts

    def position_at_or_before(self, moment: int | datetime) -> int:
        """Greatest block whose timestamp is ``<= moment``.

        Before genesis resolves to block 0; after the head resolves to the head.

        Raises:
            LedgerUnavailableError: if the ledger cannot answer.
        """

        ts = to_unix(moment) if isinstance(moment, datetime) else int(moment)
        head = self.head()

        memo = self._answers.get(ts)
        if memo is not None:
            return int(memo)

        if self.timestamp_of(head) <= ts:
            return head
        if self.timestamp_of(0) > ts:
            return 0

        # invariant: ts(lo) <= ts < ts(hi)
        lo, hi = 0, head
        while hi - lo > 1:
            mid = (lo + hi) // 2
            if self.timestamp_of(mid) <= ts:
                lo = mid
            else:
                hi = mid

        # strictly below head, so a later head cannot change the answer
        self._answers.set(ts, lo)
        logger.debug("time %d → block %d (head %d)", ts, lo, head)
        return lo
