"""chronodid.runtime

Wires the components for one data directory. No process-wide state: callers own
the returned :class:`Runtime` and close it.
"""

from __future__ import annotations

from dataclasses import dataclass

from chronodid.core.blocktime import BlockTimeIndex
from chronodid.core.config import Config
from chronodid.core.database import Database
from chronodid.core.ingestion import IngestionPipeline
from chronodid.core.reconstructor import StateReconstructor
from chronodid.core.webhooks import WebhookNotifier
from chronodid.credentials.service import CredentialService
from chronodid.credentials.verifier import CredentialVerifier
from chronodid.did.resolver import DidResolver
from chronodid.ledger import LedgerSource


@dataclass
class Runtime:
    config: Config
    db: Database
    ledger: LedgerSource
    blocktime: BlockTimeIndex
    reconstructor: StateReconstructor
    pipeline: IngestionPipeline
    resolver: DidResolver
    verifier: CredentialVerifier
    credentials: CredentialService
    notifier: WebhookNotifier | None = None

    def close(self) -> None:
        if self.notifier is not None:
            self.notifier.close()
        close = getattr(self.ledger, "close", None)
        if callable(close):
            close()
        self.db.close()


def open_runtime(config: Config, *, ledger: LedgerSource | None = None) -> Runtime:
    if ledger is None:
        from chronodid.ledger.rpc import JsonRpcLedger

        ledger = JsonRpcLedger.from_config(config.ledger)

    db = Database(config.db_path)
    blocktime = BlockTimeIndex(ledger, config.cache)
    reconstructor = StateReconstructor(db, max_entries=config.cache.state_entries)
    notifier = (
        WebhookNotifier(db, timeout_s=config.webhooks.timeout_s, max_pending=config.webhooks.max_pending)
        if config.webhooks.enabled
        else None
    )
    pipeline = IngestionPipeline(db=db, ledger=ledger, indexer=config.indexer, notifier=notifier)
    pipeline.register_handler(lambda ev: reconstructor.invalidate(ev.identity))

    resolver = DidResolver(db, blocktime, reconstructor=reconstructor, chain_id=config.ledger.chain_id)
    verifier = CredentialVerifier(resolver)
    credentials = CredentialService(db, verifier, api_base_url=config.credentials.api_base_url)
    return Runtime(
        config=config,
        db=db,
        ledger=ledger,
        blocktime=blocktime,
        reconstructor=reconstructor,
        pipeline=pipeline,
        resolver=resolver,
        verifier=verifier,
        credentials=credentials,
        notifier=notifier,
    )
