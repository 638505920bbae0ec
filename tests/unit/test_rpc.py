from __future__ import annotations

from typing import Any

import httpx
import pytest

from chronodid.core.exceptions import LedgerUnavailableError
from chronodid.ledger.abi import REGISTRY_TOPICS
from chronodid.ledger.rpc import CircuitBreaker, JsonRpcLedger

REGISTRY = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


class FakeResp:
    def __init__(self, body: Any, status: int = 200) -> None:
        self._body = body
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            req = httpx.Request("POST", "https://example.invalid")
            raise httpx.HTTPStatusError("boom", request=req, response=httpx.Response(self.status_code, request=req))

    def json(self) -> Any:
        return self._body


def _ledger(**kwargs: Any) -> JsonRpcLedger:
    return JsonRpcLedger(rpc_url="https://example.invalid", registry_address=REGISTRY, **kwargs)


def test_head_block_parses_hex(monkeypatch: pytest.MonkeyPatch) -> None:
    ledger = _ledger()
    seen: list[dict[str, Any]] = []

    def fake_post(url: str, *, json: dict[str, Any]) -> FakeResp:
        seen.append(json)
        return FakeResp({"jsonrpc": "2.0", "id": json["id"], "result": "0x1b4"})

    monkeypatch.setattr(ledger._http, "post", fake_post)
    assert ledger.head_block() == 436
    assert seen[0]["method"] == "eth_blockNumber"


def test_block_timestamp_and_missing_block(monkeypatch: pytest.MonkeyPatch) -> None:
    ledger = _ledger()

    def fake_post(url: str, *, json: dict[str, Any]) -> FakeResp:
        assert json["method"] == "eth_getBlockByNumber"
        if json["params"][0] == "0x10":
            return FakeResp({"result": {"number": "0x10", "timestamp": "0x64"}})
        return FakeResp({"result": None})

    monkeypatch.setattr(ledger._http, "post", fake_post)
    assert ledger.block_timestamp(16) == 100
    with pytest.raises(LedgerUnavailableError):
        ledger.block_timestamp(17)


def test_get_logs_filters_by_registry_and_topics(monkeypatch: pytest.MonkeyPatch) -> None:
    ledger = _ledger()
    captured: dict[str, Any] = {}

    def fake_post(url: str, *, json: dict[str, Any]) -> FakeResp:
        captured.update(json["params"][0])
        return FakeResp({"result": []})

    monkeypatch.setattr(ledger._http, "post", fake_post)
    assert ledger.get_logs(1, 2000) == []
    assert captured["address"] == REGISTRY.lower()
    assert captured["fromBlock"] == "0x1"
    assert captured["toBlock"] == "0x7d0"
    assert set(captured["topics"][0]) == set(REGISTRY_TOPICS)


def test_rpc_error_object_is_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    ledger = _ledger(max_retries=3)
    calls: list[int] = []

    def fake_post(url: str, *, json: dict[str, Any]) -> FakeResp:
        calls.append(1)
        return FakeResp({"error": {"code": -32005, "message": "query returned more than 10000 results"}})

    monkeypatch.setattr(ledger._http, "post", fake_post)
    with pytest.raises(LedgerUnavailableError):
        ledger.get_logs(0, 10)
    assert len(calls) == 1


def test_transport_errors_retry_with_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    ledger = _ledger(max_retries=2, circuit_breaker_threshold=10)
    sleeps: list[float] = []
    calls: list[int] = []

    def fake_post(url: str, *, json: dict[str, Any]) -> FakeResp:
        calls.append(1)
        if len(calls) < 3:
            raise httpx.ConnectError("refused")
        return FakeResp({"result": "0x2"})

    monkeypatch.setattr("time.sleep", lambda s: sleeps.append(float(s)))
    monkeypatch.setattr(ledger._http, "post", fake_post)
    assert ledger.head_block() == 2
    assert sleeps == [1.0, 2.0]


def test_sustained_failure_surfaces_as_ledger_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    ledger = _ledger(max_retries=1, circuit_breaker_threshold=10)

    def fake_post(url: str, *, json: dict[str, Any]) -> FakeResp:
        return FakeResp({}, status=503)

    monkeypatch.setattr("time.sleep", lambda s: None)
    monkeypatch.setattr(ledger._http, "post", fake_post)
    with pytest.raises(LedgerUnavailableError):
        ledger.head_block()


def test_open_breaker_fails_fast(monkeypatch: pytest.MonkeyPatch) -> None:
    ledger = _ledger(max_retries=0, circuit_breaker_threshold=1, circuit_breaker_cooldown_s=60)
    calls: list[int] = []

    def fake_post(url: str, *, json: dict[str, Any]) -> FakeResp:
        calls.append(1)
        raise httpx.ReadTimeout("slow")

    monkeypatch.setattr(ledger._http, "post", fake_post)
    with pytest.raises(LedgerUnavailableError):
        ledger.head_block()
    with pytest.raises(LedgerUnavailableError, match="circuit breaker open"):
        ledger.head_block()
    assert len(calls) == 1


def test_circuit_breaker_closes_after_cooldown(monkeypatch: pytest.MonkeyPatch) -> None:
    now = [100.0]
    monkeypatch.setattr("chronodid.ledger.rpc.time.monotonic", lambda: now[0])
    b = CircuitBreaker(threshold=2, cooldown_s=5)
    b.on_failure()
    assert b.allow()
    b.on_failure()
    assert not b.allow()
    now[0] += 6
    assert b.allow()
