"""splitchain CLI — reference driver for the ledger and settlement core.

Usage:
    python -m splitchain.cli balances --events data/events.jsonl --group 1
    python -m splitchain.cli verify-log --events data/events.jsonl
    python -m splitchain.cli settle --events data/events.jsonl --group 1 \
        --debtor 0xabc... --routes config/routes.json

Exit status is 0 on success and 1 on any failure.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from splitchain.config import SettlementConfig
from splitchain.crypto.typed_data import TypedDataDomain
from splitchain.errors import SplitchainError
from splitchain.ledger.engine import BalanceEngine, SplitPolicy
from splitchain.models.ledger import EdgeKey, normalize_address
from splitchain.persistence.event_log import EventLog
from splitchain.settlement.coordinator import SettlementCoordinator
from splitchain.settlement.orchestrator import SettlementOrchestrator
from splitchain.settlement.routes import RouteBook
from splitchain.settlement.venue import FusionPlusVenue, LocalAccountSigner


def _load_engine(args: argparse.Namespace) -> tuple[EventLog, BalanceEngine]:
    if not args.events.exists():
        raise FileNotFoundError(f"Event log not found: {args.events}")
    event_log = EventLog(storage_path=args.events)
    policy = SplitPolicy.ALL_MEMBERS if getattr(args, "legacy_split", False) else SplitPolicy.EXCLUDE_PAYER
    engine = BalanceEngine.replay(event_log, split_policy=policy)
    return event_log, engine


def cmd_balances(args: argparse.Namespace) -> int:
    _, engine = _load_engine(args)
    edges = engine.edges(args.group, token=args.token, open_only=not args.all)
    print(json.dumps(
        [
            {
                "id": e.edge_id,
                "debtor": e.key.debtor,
                "creditor": e.key.creditor,
                "token": e.key.token,
                "amount": str(e.amount),
                "open": e.open,
            }
            for e in edges
        ],
        indent=2,
    ))
    return 0


def cmd_verify_log(args: argparse.Namespace) -> int:
    event_log, engine = _load_engine(args)
    print(json.dumps({
        "events": event_log.count,
        "rejected": [str(e) for e in engine.rejected],
        "over_settlements": [str(e) for e in engine.over_settlements],
        "unknown_edges": [str(e) for e in engine.unknown_edges],
    }, indent=2))
    return 0 if not engine.rejected else 1


def cmd_settle(args: argparse.Namespace) -> int:
    config = SettlementConfig.from_env(env_file=args.env_file)
    if not config.private_key:
        print("ERROR: PRIVATE_KEY is not set", file=sys.stderr)
        return 1

    event_log, engine = _load_engine(args)
    signer = LocalAccountSigner(config.private_key)
    maker = signer.address.lower()
    if config.maker_address and normalize_address(config.maker_address) != maker:
        print(
            f"ERROR: MAKER_ADDRESS {config.maker_address} does not match PRIVATE_KEY ({signer.address})",
            file=sys.stderr,
        )
        return 1
    # Orders are signed as the maker; only the debtor's own key can settle.
    if normalize_address(args.debtor) != maker:
        print(
            f"ERROR: signer {signer.address} is not the debtor {args.debtor}",
            file=sys.stderr,
        )
        return 1

    venue = FusionPlusVenue(config, signer)
    coordinator = SettlementCoordinator(
        engine,
        event_log,
        SettlementOrchestrator.from_config(venue, config),
        RouteBook.from_json(args.routes),
        TypedDataDomain.ledger(config.ledger_chain_id, config.ledger_address),
    )

    if args.creditor:
        if not args.token:
            print("ERROR: --token is required with --creditor", file=sys.stderr)
            return 1
        key = EdgeKey.of(args.group, args.debtor, args.creditor, args.token)
    else:
        edge = coordinator.select_edge(args.group, args.debtor, token=args.token)
        if edge is None:
            print("Nothing owed.")
            return 0
        key = edge.key

    outcome = coordinator.settle(key)
    print(json.dumps({
        "edge": outcome.edge_id,
        "amount": str(outcome.amount),
        "state": outcome.state.value,
        "order_hash": outcome.attempt.order_hash,
        "intent_hash": outcome.intent_hash,
        "receipt_hash": outcome.receipt_hash,
        "needs_reconciliation": outcome.needs_reconciliation,
        "errors": outcome.errors,
    }, indent=2))
    return 0 if outcome.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="splitchain",
        description="Shared-expense ledger with cross-chain settlement",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    def events_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument("--events", type=Path, required=True, help="Event log (JSONL)")
        p.add_argument(
            "--legacy-split", action="store_true",
            help="Divide expenses by full member count",
        )

    # balances
    p_bal = sub.add_parser("balances", help="Show debt edges of a group")
    events_arg(p_bal)
    p_bal.add_argument("--group", required=True, help="Group ID")
    p_bal.add_argument("--token", help="Only edges in this token")
    p_bal.add_argument("--all", action="store_true", help="Include closed edges")

    # verify-log
    p_ver = sub.add_parser("verify-log", help="Verify and replay an event log")
    events_arg(p_ver)

    # settle
    p_set = sub.add_parser("settle", help="Settle a debt edge via cross-chain swap")
    events_arg(p_set)
    p_set.add_argument("--group", required=True, help="Group ID")
    p_set.add_argument("--debtor", required=True, help="Debtor address")
    p_set.add_argument("--creditor", help="Creditor address (default: largest debt)")
    p_set.add_argument("--token", help="Ledger token address")
    p_set.add_argument("--routes", type=Path, required=True, help="Route book (JSON)")
    p_set.add_argument("--env-file", type=Path, default=Path(".env"), help=".env file")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "balances": cmd_balances,
        "verify-log": cmd_verify_log,
        "settle": cmd_settle,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except (SplitchainError, ValueError, OSError) as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
