"""chronodid.cli

Command line interface entry point for chronodid.

Design constraints:
- argparse-based.
- Lazy imports: do not import heavy dependencies at parse time.

Exit codes: 0 ok, 1 negative result or operational failure, 2 usage or config error.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chronodid.core.config import Config
    from chronodid.runtime import Runtime

EPILOG = "A signature is only as good as the authority behind it when it was made."


@dataclass(frozen=True)
class CliContext:
    repo_root: Path


def _repo_root_from_cwd() -> Path:
    return Path.cwd()


def _add_at_options(p: argparse.ArgumentParser, *, required: bool = False) -> None:
    g = p.add_mutually_exclusive_group(required=required)
    g.add_argument("--block", type=int, default=None, help="Ledger block number.")
    g.add_argument("--at", default=None, help="ISO-8601 moment (mapped to the block at or before it).")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chronodid",
        description="Temporal did:ethr resolution and credential verification.",
        epilog=EPILOG,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit.")
    parser.add_argument("--network", default=None, help="Network preset (local, sepolia, mainnet).")
    parser.add_argument("--json", action="store_true", help="Machine-readable output.")

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("sync", help="Backfill registry events up to the confirmed head")
    p_follow = sub.add_parser("follow", help="Keep syncing until interrupted")
    p_follow.add_argument("--interval", type=float, default=None, help="Poll interval in seconds.")

    p_resolve = sub.add_parser("resolve", help="Resolve a DID document")
    p_resolve.add_argument("did")
    _add_at_options(p_resolve)

    p_owner = sub.add_parser("owner", help="Owner of a DID")
    p_owner.add_argument("did")
    _add_at_options(p_owner)

    p_signer = sub.add_parser("verify-signer", help="Was ADDRESS a valid signer for DID at a moment?")
    p_signer.add_argument("did")
    p_signer.add_argument("address")
    _add_at_options(p_signer, required=True)

    p_verify = sub.add_parser("verify", help="Verify a stored credential")
    p_verify.add_argument("credential_id")

    p_events = sub.add_parser("events", help="Registry event history, newest first")
    p_events.add_argument("did", nargs="?", default=None, help="Only events of this DID.")
    p_events.add_argument("--limit", type=int, default=10)
    p_events.add_argument("--offset", type=int, default=0)

    p_hooks = sub.add_parser("webhooks", help="Manage live-update webhook subscriptions")
    hooks = p_hooks.add_subparsers(dest="webhooks_command", required=True)
    p_hooks_add = hooks.add_parser("add", help="Subscribe URL to applied events")
    p_hooks_add.add_argument("url")
    p_hooks_add.add_argument("--events", default="*", help="Comma-separated event kind globs.")
    hooks.add_parser("list", help="List subscriptions")
    p_hooks_rm = hooks.add_parser("remove", help="Delete a subscription")
    p_hooks_rm.add_argument("id", type=int)

    sub.add_parser("integrity", help="Check that projections equal a replay of the event log")
    sub.add_parser("status", help="Print sync and store status")

    return parser


def _print_version() -> None:
    from chronodid import __version__

    print(f"chronodid v{__version__}")


def _emit(args: argparse.Namespace, data: Any, text: str) -> None:
    if args.json:
        print(json.dumps(data, indent=2, sort_keys=True, default=str))
    else:
        print(text)


def _at(args: argparse.Namespace) -> int | str | None:
    return args.block if args.block is not None else args.at


def _load_config(ctx: CliContext, args: argparse.Namespace) -> Config:
    from chronodid.core.config import Config

    overrides: dict[str, Any] = {}
    if args.network:
        overrides["network"] = args.network
    config = Config.from_repo_defaults(ctx.repo_root, **overrides)
    if not config.data_dir.is_absolute():
        config = config.model_copy(update={"data_dir": ctx.repo_root / config.data_dir})
    return config


def _cmd_sync(rt: Runtime, args: argparse.Namespace) -> int:
    stats = rt.pipeline.sync()
    _emit(
        args,
        vars(stats),
        f"synced to block {stats.last_block}: {stats.applied} new, {stats.duplicates} duplicate, "
        f"{stats.skipped} skipped, {stats.conflicts} conflicting",
    )
    return 0


def _cmd_follow(rt: Runtime, args: argparse.Namespace) -> int:
    import time

    from chronodid.core.ingestion import LedgerFollower

    follower = LedgerFollower(rt.pipeline, poll_interval_s=args.interval)
    follower.start()
    print("following registry events (ctrl-c to stop)")
    try:
        while follower.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        follower.stop()
    print(f"stopped after {follower.rounds} rounds: {follower.totals.applied} new events")
    return 0


def _warn_degraded(degraded: bool) -> None:
    if degraded:
        print("warning: ledger unavailable, answer is DEGRADED (latest known state)", file=sys.stderr)


def _cmd_resolve(rt: Runtime, args: argparse.Namespace) -> int:
    result = rt.resolver.resolve_with_metadata(args.did, _at(args))
    _warn_degraded(result.degraded)
    print(result.document.to_json(indent=2))
    return 0


def _cmd_owner(rt: Runtime, args: argparse.Namespace) -> int:
    owner = rt.resolver.owner_at(args.did, _at(args))
    _emit(args, {"did": args.did, "owner": owner}, owner)
    return 0


def _cmd_verify_signer(rt: Runtime, args: argparse.Namespace) -> int:
    at = _at(args)
    assert at is not None
    check = rt.resolver.check_signer(args.did, args.address, at)
    _warn_degraded(check.degraded)
    _emit(args, {**check.model_dump(), "at": at}, "valid" if check.valid else "invalid")
    return 0 if check.valid else 1


def _cmd_verify(rt: Runtime, args: argparse.Namespace) -> int:
    result = rt.credentials.verify(args.credential_id)
    checks = result.checks
    text = "\n".join(
        [
            f"credential: {result.details.credential_id}",
            f"- signature: {checks.signature}",
            f"- authority at issuance: {checks.authority_at_issuance}{' (DEGRADED)' if result.degraded else ''}",
            f"- not expired: {checks.not_expired}",
            f"- not revoked: {checks.not_revoked}",
            f"valid: {result.valid}",
        ]
    )
    _emit(args, result.model_dump(mode="json"), text)
    return 0 if result.valid else 1


def _cmd_events(rt: Runtime, args: argparse.Namespace) -> int:
    from chronodid.core.webhooks import event_notification

    page = rt.resolver.events(args.did, limit=args.limit, offset=args.offset)
    events = [event_notification(ev)["event"] for ev in page.events]
    lines = [f"events {page.offset + 1}-{page.offset + len(events)} of {page.total}"]
    lines += [f"- block {e['block_number']}:{e['log_index']} {e['type']} {e['identity']}" for e in events]
    _emit(
        args,
        {"events": events, "total": page.total, "limit": page.limit, "offset": page.offset},
        "\n".join(lines) if events else f"no events (total {page.total})",
    )
    return 0


def _cmd_webhooks(rt: Runtime, args: argparse.Namespace) -> int:
    from chronodid.core.webhooks import (
        add_webhook_subscription,
        list_webhook_subscriptions,
        remove_webhook_subscription,
    )

    if args.webhooks_command == "add":
        sub_id = add_webhook_subscription(rt.db, url=args.url, event_globs=args.events)
        _emit(args, {"status": "ok", "id": sub_id}, f"added webhook {sub_id}")
        return 0
    if args.webhooks_command == "list":
        subs = [vars(s) for s in list_webhook_subscriptions(rt.db)]
        text = "\n".join(f"{s['id']}: {s['url']} [{s['event_globs']}]" for s in subs) or "no webhooks"
        _emit(args, subs, text)
        return 0
    if remove_webhook_subscription(rt.db, sub_id=args.id):
        _emit(args, {"status": "ok"}, f"removed webhook {args.id}")
        return 0
    _emit(args, {"status": "not_found", "id": args.id}, f"no webhook {args.id}")
    return 1


def _cmd_integrity(rt: Runtime, args: argparse.Namespace) -> int:
    from chronodid.core.projections import verify_projections

    mismatched = verify_projections(rt.db)
    _emit(
        args,
        {"ok": not mismatched, "mismatched": mismatched},
        "projections match the event log" if not mismatched else "drift: " + ", ".join(mismatched),
    )
    return 0 if not mismatched else 1


def _cmd_status(rt: Runtime, args: argparse.Namespace) -> int:
    stats = rt.db.event_stats()
    data = {
        "network": rt.config.network,
        "registry": rt.config.ledger.registry_address,
        "db": str(rt.config.db_path),
        "cursor": rt.db.get_cursor(),
        **stats,
    }
    text = "\n".join(["chronodid status", *(f"- {k}: {v}" for k, v in data.items())])
    _emit(args, data, text)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        _print_version()
        return 0

    if not args.command:
        parser.print_help()
        return 2

    dispatch: dict[str, Callable[[Runtime, argparse.Namespace], int]] = {
        "sync": _cmd_sync,
        "follow": _cmd_follow,
        "resolve": _cmd_resolve,
        "owner": _cmd_owner,
        "verify-signer": _cmd_verify_signer,
        "verify": _cmd_verify,
        "events": _cmd_events,
        "webhooks": _cmd_webhooks,
        "integrity": _cmd_integrity,
        "status": _cmd_status,
    }
    fn = dispatch.get(str(args.command))
    if fn is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    from chronodid.core.exceptions import ChronodidError, ConfigError, InvalidInputError

    ctx = CliContext(repo_root=_repo_root_from_cwd())
    try:
        config = _load_config(ctx, args)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from chronodid.runtime import open_runtime

    rt = open_runtime(config)
    try:
        return int(fn(rt, args))
    except InvalidInputError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except ChronodidError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        rt.close()


if __name__ == "__main__":
    raise SystemExit(main())
