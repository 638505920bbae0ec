from __future__ import annotations

import json
import threading
import time
import urllib.error
from pathlib import Path
from typing import Any

import pytest

from chronodid.core import webhooks
from chronodid.core.database import Database
from chronodid.core.events import parse_event
from chronodid.core.ingestion import IngestionPipeline
from chronodid.core.webhooks import (
    WebhookNotifier,
    add_webhook_subscription,
    dispatch_event_webhooks,
    event_notification,
    list_webhook_subscriptions,
    remove_webhook_subscription,
    subscription_matches,
)
from tests.unit._ledger import addr, delegate_changed, owner_changed

X = addr(1)


class _Resp:
    def __enter__(self) -> _Resp:
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def read(self) -> bytes:
        return b"ok"


@pytest.fixture
def db(temp_dir: Path):
    d = Database(temp_dir / "chronodid.db")
    yield d
    d.close()


def test_subscription_crud_and_matching(db: Database) -> None:
    sid = add_webhook_subscription(db, url="http://hook.local/a", event_globs="Owner*, Delegate*")
    add_webhook_subscription(db, url="http://hook.local/b", enabled=False)

    subs = list_webhook_subscriptions(db)
    assert [s.url for s in subs] == ["http://hook.local/a", "http://hook.local/b"]
    assert subs[1].enabled is False
    assert subscription_matches(subs[0], event_kind="OwnerChanged")
    assert subscription_matches(subs[0], event_kind="DelegateChanged")
    assert not subscription_matches(subs[0], event_kind="AttributeChanged")

    assert remove_webhook_subscription(db, sub_id=sid) is True
    assert remove_webhook_subscription(db, sub_id=sid) is False
    assert len(list_webhook_subscriptions(db)) == 1


def test_notification_shape() -> None:
    ev = parse_event(delegate_changed(X, addr(2), 1234, 7, 3))
    body = event_notification(ev)["event"]
    assert body["type"] == "DelegateChanged"
    assert body["identity"] == X
    assert (body["block_number"], body["log_index"]) == (7, 3)
    assert body["natural_key"] == ev.natural_key
    assert body["data"]["delegate"] == addr(2)


def test_dispatch_posts_to_matching_enabled_subscriptions(db: Database, monkeypatch: pytest.MonkeyPatch) -> None:
    add_webhook_subscription(db, url="http://hook.local/owner", event_globs="OwnerChanged")
    add_webhook_subscription(db, url="http://hook.local/attr", event_globs="Attribute*")
    add_webhook_subscription(db, url="http://hook.local/off", enabled=False)

    sent: list[tuple[str, dict[str, Any]]] = []

    def fake_urlopen(req: Any, timeout: float) -> _Resp:
        sent.append((req.full_url, json.loads(req.data)))
        return _Resp()

    monkeypatch.setattr(webhooks.urllib.request, "urlopen", fake_urlopen)
    delivered = dispatch_event_webhooks(db, parse_event(owner_changed(X, addr(2), 10)))

    assert delivered == 1
    assert [u for u, _ in sent] == ["http://hook.local/owner"]
    assert sent[0][1]["event"]["type"] == "OwnerChanged"


def test_dispatch_retries_with_backoff_then_gives_up(db: Database, monkeypatch: pytest.MonkeyPatch) -> None:
    add_webhook_subscription(db, url="http://hook.local/down")
    attempts: list[str] = []
    sleeps: list[float] = []

    def failing_urlopen(req: Any, timeout: float) -> _Resp:
        attempts.append(req.full_url)
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(webhooks.urllib.request, "urlopen", failing_urlopen)
    monkeypatch.setattr(webhooks.time, "sleep", sleeps.append)

    assert dispatch_event_webhooks(db, parse_event(owner_changed(X, addr(2), 10))) == 0
    assert len(attempts) == 3
    assert sleeps == [0.5, 1.0]


def test_notifier_is_noop_without_subscriptions(db: Database, monkeypatch: pytest.MonkeyPatch) -> None:
    def unexpected(*_a: Any, **_k: Any) -> None:
        raise AssertionError("no subscriptions, no requests")

    monkeypatch.setattr(webhooks.urllib.request, "urlopen", unexpected)
    WebhookNotifier(db)(parse_event(owner_changed(X, addr(2), 10)))


def test_slow_subscribers_do_not_delay_ingestion(db: Database, monkeypatch: pytest.MonkeyPatch) -> None:
    add_webhook_subscription(db, url="http://hook.local/slow")
    gate = threading.Event()
    sent: list[dict[str, Any]] = []

    def slow_post(url: str, payload: dict[str, Any], *, timeout_s: float) -> None:
        gate.wait(5)
        sent.append(payload)

    monkeypatch.setattr("chronodid.core.webhooks._post_json", slow_post)
    notifier = WebhookNotifier(db)
    pipeline = IngestionPipeline(db=db, notifier=notifier)

    started = time.monotonic()
    for block in (10, 20, 30):
        assert pipeline.apply(parse_event(owner_changed(X, addr(block), block))) is True
    assert time.monotonic() - started < 1.0
    assert sent == []

    gate.set()
    notifier.close(timeout_s=5)
    assert [p["event"]["block_number"] for p in sent] == [10, 20, 30]
    assert notifier.delivered == 3


def test_full_queue_drops_instead_of_blocking(db: Database, monkeypatch: pytest.MonkeyPatch) -> None:
    add_webhook_subscription(db, url="http://hook.local/slow")
    gate = threading.Event()
    taken = threading.Event()

    def stuck_post(url: str, payload: dict[str, Any], *, timeout_s: float) -> None:
        taken.set()
        gate.wait(5)

    monkeypatch.setattr("chronodid.core.webhooks._post_json", stuck_post)
    notifier = WebhookNotifier(db, max_pending=1)

    notifier(parse_event(owner_changed(X, addr(2), 10)))
    assert taken.wait(5)
    notifier(parse_event(owner_changed(X, addr(3), 11)))
    notifier(parse_event(owner_changed(X, addr(4), 12)))

    assert notifier.dropped == 1
    gate.set()
    notifier.close(timeout_s=5)
    assert notifier.delivered == 2
