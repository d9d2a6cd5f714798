"""Visibility market CLI — command-line interface for the ledger and escrow.

Usage:
    python -m visibility.cli status
    python -m visibility.cli fund --account 0x90F7... --amount 1000000000000000000
    python -m visibility.cli link-creator --caller 0x9965... --id x-123 --creator 0x3C44...
    python -m visibility.cli quote --id x-123 --amount 5 --user 0x90F7...
    python -m visibility.cli buy --caller 0x90F7... --id x-123 --amount 5 --value 60000000000000
    python -m visibility.cli create-service --caller 0x3C44... --id x-123 --type x-post --cost 50
    python -m visibility.cli request --caller 0x90F7... --service 0 --data "repost please"
    python -m visibility.cli check-invariants

State lives in the --data directory (state.json + events.jsonl). Both --config
and --data default to the repository root in a checkout, otherwise to the
working directory.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from visibility.config import MarketConfig, default_dir
from visibility.invariants import check
from visibility.models.services import PaymentType
from visibility.persistence.event_log import EventLog
from visibility.persistence.state_store import StateStore
from visibility.service import ServiceResult, VisibilityMarket


DEFAULT_CONFIG = default_dir("config")
DEFAULT_DATA = default_dir("data")


def _make_market(args: argparse.Namespace) -> VisibilityMarket:
    """Create a VisibilityMarket with durable persistence."""
    data_dir: Path = args.data
    data_dir.mkdir(parents=True, exist_ok=True)
    config = MarketConfig.from_env(args.config)
    return VisibilityMarket(
        config,
        event_log=EventLog(storage_path=data_dir / "events.jsonl"),
        state_store=StateStore(storage_path=data_dir / "state.json"),
    )


def _report(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    market = _make_market(args)
    print(json.dumps(market.status(), indent=2))
    return 0


def cmd_fund(args: argparse.Namespace) -> int:
    return _report(_make_market(args).fund(args.account, args.amount))


def cmd_link_creator(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(market.link_creator(args.caller, args.id, args.creator, args.metadata))


def cmd_set_partner(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(market.set_partner(args.caller, args.referrer, args.partner))


def cmd_quote(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(
        market.quote(args.id, args.amount, args.user, args.referrer, sell=args.sell)
    )


def cmd_buy(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(
        market.buy(args.caller, args.id, args.amount, args.referrer, args.value)
    )


def cmd_sell(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(market.sell(args.caller, args.id, args.amount, args.referrer))


def cmd_claim_fee(args: argparse.Namespace) -> int:
    return _report(_make_market(args).claim_fee(args.caller, args.id))


def cmd_create_service(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(
        market.create_service(
            args.caller,
            args.service_type,
            args.id,
            args.cost,
            payment_type=PaymentType(args.payment),
            buy_back_credits_share=args.buy_back_share,
        )
    )


def cmd_request(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(market.request(args.caller, args.service, args.data_text, args.value))


def cmd_accept(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(
        market.accept(args.caller, args.service, args.execution, args.data_text)
    )


def cmd_validate(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(market.validate(args.caller, args.service, args.execution))


def cmd_cancel(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(
        market.cancel(args.caller, args.service, args.execution, args.data_text)
    )


def cmd_dispute(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(
        market.dispute(args.caller, args.service, args.execution, args.data_text)
    )


def cmd_resolve(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(
        market.resolve(
            args.caller, args.service, args.execution, args.refund, args.data_text
        )
    )


def cmd_buy_back(args: argparse.Namespace) -> int:
    market = _make_market(args)
    return _report(
        market.buy_back(args.caller, args.id, args.amount, args.max_wei)
    )


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Run fee schedule and config invariant checks."""
    return check(args.config / "market_params.json")


def _add_execution_args(parser: argparse.ArgumentParser, with_data: bool = True) -> None:
    parser.add_argument("--caller", required=True, help="Sender address")
    parser.add_argument("--service", type=int, required=True, help="Service nonce")
    parser.add_argument("--execution", type=int, required=True, help="Execution nonce")
    if with_data:
        parser.add_argument("--text", dest="data_text", default="", help="Free-text payload")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="visibility",
        description="Visibility credits ledger and service escrow CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=DEFAULT_DATA,
        help="Path to state directory (default: data/)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show market status")

    # fund
    p_fund = sub.add_parser("fund", help="Credit native currency to an account")
    p_fund.add_argument("--account", required=True, help="Account address")
    p_fund.add_argument("--amount", type=int, required=True, help="Amount in wei")

    # link-creator
    p_link = sub.add_parser("link-creator", help="Link a creator to an entity")
    p_link.add_argument("--caller", required=True, help="Creators linker address")
    p_link.add_argument("--id", required=True, help="Visibility id")
    p_link.add_argument("--creator", required=True, help="Creator address")
    p_link.add_argument("--metadata", default="", help="Creator metadata")

    # set-partner
    p_partner = sub.add_parser("set-partner", help="Link a referrer to a partner")
    p_partner.add_argument("--caller", required=True, help="Partners linker address")
    p_partner.add_argument("--referrer", required=True, help="Referrer address")
    p_partner.add_argument("--partner", help="Partner address (omit to unlink)")

    # quote
    p_quote = sub.add_parser("quote", help="Price a buy or sell")
    p_quote.add_argument("--id", required=True, help="Visibility id")
    p_quote.add_argument("--amount", type=int, required=True, help="Credits")
    p_quote.add_argument("--user", required=True, help="Trader address")
    p_quote.add_argument("--referrer", help="Referrer address")
    p_quote.add_argument("--sell", action="store_true", help="Quote a sell")

    # buy
    p_buy = sub.add_parser("buy", help="Buy credits")
    p_buy.add_argument("--caller", required=True, help="Buyer address")
    p_buy.add_argument("--id", required=True, help="Visibility id")
    p_buy.add_argument("--amount", type=int, required=True, help="Credits")
    p_buy.add_argument("--value", type=int, required=True, help="Attached wei")
    p_buy.add_argument("--referrer", help="Referrer address")

    # sell
    p_sell = sub.add_parser("sell", help="Sell credits")
    p_sell.add_argument("--caller", required=True, help="Seller address")
    p_sell.add_argument("--id", required=True, help="Visibility id")
    p_sell.add_argument("--amount", type=int, required=True, help="Credits")
    p_sell.add_argument("--referrer", help="Referrer address")

    # claim-fee
    p_claim = sub.add_parser("claim-fee", help="Pay accrued creator fees")
    p_claim.add_argument("--caller", required=True, help="Sender address")
    p_claim.add_argument("--id", required=True, help="Visibility id")

    # create-service
    p_service = sub.add_parser("create-service", help="List a service")
    p_service.add_argument("--caller", required=True, help="Originator address")
    p_service.add_argument("--id", required=True, help="Visibility id")
    p_service.add_argument("--type", dest="service_type", required=True, help="Service type")
    p_service.add_argument("--cost", type=int, required=True, help="Price (credits or wei)")
    p_service.add_argument(
        "--payment", default=PaymentType.CREDITS.value,
        choices=[p.value for p in PaymentType],
        help="Payment type (default: credits)",
    )
    p_service.add_argument(
        "--buy-back-share", type=int, default=0,
        help="Buy-back share in ppm (currency services)",
    )

    # request
    p_request = sub.add_parser("request", help="Request a service execution")
    p_request.add_argument("--caller", required=True, help="Requester address")
    p_request.add_argument("--service", type=int, required=True, help="Service nonce")
    p_request.add_argument("--text", dest="data_text", default="", help="Request payload")
    p_request.add_argument("--value", type=int, default=0, help="Attached wei")

    # execution transitions
    _add_execution_args(sub.add_parser("accept", help="Accept an execution"))
    _add_execution_args(sub.add_parser("validate", help="Validate an execution"), with_data=False)
    _add_execution_args(sub.add_parser("cancel", help="Cancel a requested execution"))
    _add_execution_args(sub.add_parser("dispute", help="Dispute an accepted execution"))
    p_resolve = sub.add_parser("resolve", help="Resolve a disputed execution")
    _add_execution_args(p_resolve)
    p_resolve.add_argument("--refund", action="store_true", help="Refund the requester")

    # buy-back
    p_bb = sub.add_parser("buy-back", help="Spend the buy-back pool on credits")
    p_bb.add_argument("--caller", required=True, help="Creator address")
    p_bb.add_argument("--id", required=True, help="Visibility id")
    p_bb.add_argument("--amount", type=int, required=True, help="Credits")
    p_bb.add_argument("--max-wei", type=int, required=True, help="Slippage bound in wei")

    # check-invariants
    sub.add_parser("check-invariants", help="Run fee schedule and config checks")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "fund": cmd_fund,
        "link-creator": cmd_link_creator,
        "set-partner": cmd_set_partner,
        "quote": cmd_quote,
        "buy": cmd_buy,
        "sell": cmd_sell,
        "claim-fee": cmd_claim_fee,
        "create-service": cmd_create_service,
        "request": cmd_request,
        "accept": cmd_accept,
        "validate": cmd_validate,
        "cancel": cmd_cancel,
        "dispute": cmd_dispute,
        "resolve": cmd_resolve,
        "buy-back": cmd_buy_back,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
