"""chronodid.ledger.rpc

JSON-RPC ledger adapter with:
- retries (exponential backoff)
- simple circuit breaker
- bounded timeouts

Every failure mode surfaces as :class:`LedgerUnavailableError`. Callers never hang.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx

from chronodid.core.config import LedgerConfig
from chronodid.core.events import normalize_address
from chronodid.core.exceptions import LedgerUnavailableError
from chronodid.ledger.abi import REGISTRY_TOPICS

logger = logging.getLogger(__name__)


class CircuitBreaker:
    def __init__(self, threshold: int, cooldown_s: float) -> None:
        self.threshold = max(1, int(threshold))
        self.cooldown_s = cooldown_s
        self.failures = 0
        self.opened_at: float | None = None
        self._lock = threading.Lock()

    def allow(self) -> bool:
        with self._lock:
            if self.opened_at is None:
                return True
            if (time.monotonic() - self.opened_at) >= self.cooldown_s:
                self.failures = 0
                self.opened_at = None
                return True
            return False

    def on_success(self) -> None:
        with self._lock:
            self.failures = 0
            self.opened_at = None

    def on_failure(self) -> None:
        with self._lock:
            self.failures += 1
            if self.failures >= self.threshold and self.opened_at is None:
                self.opened_at = time.monotonic()
                logger.warning("ledger circuit breaker open after %d failures", self.failures)


class JsonRpcLedger:
    """Raw JSON-RPC client for the registry (no web3 dependency)."""

    def __init__(
        self,
        *,
        rpc_url: str,
        registry_address: str,
        timeout_s: float = 10.0,
        max_retries: int = 3,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_cooldown_s: float = 30.0,
        http: httpx.Client | None = None,
    ) -> None:
        self._rpc_url = str(rpc_url)
        self.registry_address = normalize_address(registry_address)
        self.max_retries = max(0, int(max_retries))
        self._breaker = CircuitBreaker(circuit_breaker_threshold, circuit_breaker_cooldown_s)
        self._http = http or httpx.Client(timeout=timeout_s)
        self._ids = 0
        self._ids_lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: LedgerConfig) -> JsonRpcLedger:
        return cls(
            rpc_url=cfg.rpc_url,
            registry_address=cfg.registry_address,
            timeout_s=cfg.timeout_s,
            max_retries=cfg.max_retries,
            circuit_breaker_threshold=cfg.circuit_breaker_threshold,
            circuit_breaker_cooldown_s=cfg.circuit_breaker_cooldown_s,
        )

    def close(self) -> None:
        self._http.close()

    def _next_id(self) -> int:
        with self._ids_lock:
            self._ids += 1
            return self._ids

    def rpc_call(self, method: str, params: list[object]) -> Any:
        """One JSON-RPC round-trip with retries.

        Transport failures are retried; a JSON-RPC ``error`` object is not.
        """

        if not self._breaker.allow():
            raise LedgerUnavailableError(f"{method}: circuit breaker open")

        payload = {"jsonrpc": "2.0", "id": self._next_id(), "method": str(method), "params": list(params)}
        last_exc: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                r = self._http.post(self._rpc_url, json=payload)
                r.raise_for_status()
                out = r.json()
                self._breaker.on_success()
                break
            except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError, httpx.TransportError) as e:
                last_exc = e
                self._breaker.on_failure()
                logger.debug("%s attempt %d failed: %s", method, attempt + 1, e)
                if attempt >= self.max_retries or not self._breaker.allow():
                    raise LedgerUnavailableError(f"{method}: {e}") from e
                time.sleep(min(2**attempt, 8))
            except ValueError as e:
                raise LedgerUnavailableError(f"{method}: response is not JSON") from e
        else:  # pragma: no cover
            raise LedgerUnavailableError(f"{method}: {last_exc}")

        if not isinstance(out, dict):
            raise LedgerUnavailableError(f"{method}: unexpected response shape")
        if "error" in out:
            raise LedgerUnavailableError(f"{method}: {out['error']}")
        return out.get("result")

    def head_block(self) -> int:
        result = self.rpc_call("eth_blockNumber", [])
        try:
            return int(str(result), 16)
        except ValueError as e:
            raise LedgerUnavailableError(f"eth_blockNumber returned {result!r}") from e

    def block_timestamp(self, block_number: int) -> int:
        block = self.rpc_call("eth_getBlockByNumber", [hex(int(block_number)), False])
        if not isinstance(block, dict) or "timestamp" not in block:
            raise LedgerUnavailableError(f"block {block_number} not available")
        return int(str(block["timestamp"]), 16)

    def get_logs(self, from_block: int, to_block: int) -> list[dict[str, Any]]:
        """Registry logs in ``[from_block, to_block]`` (inclusive), in node order."""

        flt = {
            "address": self.registry_address,
            "fromBlock": hex(int(from_block)),
            "toBlock": hex(int(to_block)),
            "topics": [sorted(REGISTRY_TOPICS)],
        }
        logs = self.rpc_call("eth_getLogs", [flt])
        if not isinstance(logs, list):
            raise LedgerUnavailableError("eth_getLogs returned a non-list result")
        return logs
