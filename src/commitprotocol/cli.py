"""Commit protocol CLI — operator tooling around the ledger.

Usage:
    python -m commitprotocol.cli params
    python -m commitprotocol.cli stake --days 0.5 --reputation 25000 --confidence 0.97
    python -m commitprotocol.cli verify-log --log data/events.jsonl
    python -m commitprotocol.cli balances --log data/events.jsonl
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

from commitprotocol.config import DEFAULT_CONFIG_DIR, ProtocolParams
from commitprotocol.engine.stake import ReputationAggregate, quote_stake
from commitprotocol.errors import ProtocolError
from commitprotocol.persistence.event_log import EventLog


def _load_params(args: argparse.Namespace) -> ProtocolParams:
    return ProtocolParams.load(config_dir=args.config, env_file=args.env_file)


def _load_log(path: Path) -> Optional[EventLog]:
    if not path.exists():
        print(f"Failed: event log not found: {path}", file=sys.stderr)
        return None
    try:
        return EventLog(storage_path=path)
    except (ValueError, KeyError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return None


def cmd_params(args: argparse.Namespace) -> int:
    """Print the effective protocol parameters."""
    try:
        params = _load_params(args)
    except ValueError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(json.dumps(params.to_dict(), indent=2))
    return 0


def cmd_stake(args: argparse.Namespace) -> int:
    """Compute the advisory dispute stake from explicit inputs."""
    try:
        params = _load_params(args)
        base = Decimal(args.base) if args.base is not None else None
        quote = quote_stake(
            Decimal(args.days),
            ReputationAggregate(total_value_settled=Decimal(args.reputation)),
            Decimal(args.confidence),
            params,
            base=base,
        )
    except (ValueError, InvalidOperation, ProtocolError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(json.dumps(
        {
            "base": str(quote.base),
            "time_multiplier": str(quote.time_multiplier),
            "reputation_multiplier": str(quote.reputation_multiplier),
            "ai_multiplier": str(quote.ai_multiplier),
            "required": str(quote.required),
            "enforced_baseline": str(params.baseline_stake),
        },
        indent=2,
    ))
    return 0


def cmd_verify_log(args: argparse.Namespace) -> int:
    """Re-verify every record of a JSONL event log."""
    log = _load_log(args.log)
    if log is None:
        return 1
    print(json.dumps({"events": log.count, "by_kind": log.kind_counts()}, indent=2))
    return 0


def cmd_balances(args: argparse.Namespace) -> int:
    """Latest known balances per tenant, replayed from change records."""
    log = _load_log(args.log)
    if log is None:
        return 1
    balances: dict[str, Any] = {}
    for event in log.events():
        snapshot = event.payload.get("balances", event.payload)
        if "available_balance" in snapshot and "tenant_id" in snapshot:
            balances[snapshot["tenant_id"]] = {
                k: v for k, v in snapshot.items() if k != "tenant_id"
            }
    print(json.dumps(balances, indent=2, sort_keys=True))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="commitprotocol",
        description="Commit protocol — optimistic escrow ledger CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument("--env-file", type=Path, default=None, help="Path to a .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    # params
    sub.add_parser("params", help="Show effective protocol parameters")

    # stake
    p_stake = sub.add_parser("stake", help="Compute the advisory dispute stake")
    p_stake.add_argument("--days", required=True, help="Days until the dispute window closes")
    p_stake.add_argument("--reputation", default="0", help="Contributor total value settled")
    p_stake.add_argument("--confidence", default="0", help="AI verification confidence (0-1)")
    p_stake.add_argument("--base", help="Override the base stake (default: baseline_stake)")

    # verify-log
    p_verify = sub.add_parser("verify-log", help="Verify a JSONL event log")
    p_verify.add_argument("--log", type=Path, required=True, help="Path to events.jsonl")

    # balances
    p_bal = sub.add_parser("balances", help="Replay tenant balances from an event log")
    p_bal.add_argument("--log", type=Path, required=True, help="Path to events.jsonl")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "params": cmd_params,
        "stake": cmd_stake,
        "verify-log": cmd_verify_log,
        "balances": cmd_balances,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
