from __future__ import annotations

import argparse
import dataclasses
import json
from pathlib import Path
from typing import Any

from runic_market.config import MarketSettings, load_settings
from runic_market.logging import configure_logging
from runic_market.market import Market
from runic_market.scenario import load_scenario, run_scenario
from runic_market.scoring import OfferScorer


def _existing_path(value: str) -> Path:
    p = Path(value)
    if not p.exists():
        raise argparse.ArgumentTypeError(f"path not found: {value}")
    return p


def _scenario_path(value: str) -> Path:
    p = _existing_path(value)
    if p.suffix.lower() not in {".yml", ".yaml"}:
        raise argparse.ArgumentTypeError(f"scenario must be YAML: {value}")
    return p


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from e
    if n <= 0:
        raise argparse.ArgumentTypeError(f"must be > 0, got {n}")
    return n


def _settings_dict(settings: MarketSettings) -> dict[str, Any]:
    data = dataclasses.asdict(settings)
    if settings.payment_ledger_path is not None:
        data["payment_ledger_path"] = str(settings.payment_ledger_path)
    return data


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="runic-market")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sim_p = sub.add_parser("simulate", help="run a YAML scenario through auctions and executions")
    sim_p.add_argument("--scenario", type=_scenario_path, required=True)
    sim_p.add_argument(
        "--window-ms",
        type=_positive_int,
        default=None,
        help="auction window in milliseconds (default: RUNIC_AUCTION_WINDOW_MS)",
    )
    sim_p.add_argument(
        "--ledger",
        type=Path,
        default=None,
        help="append payments to this JSONL ledger (default: in memory)",
    )
    sim_p.add_argument(
        "--wait",
        action="store_true",
        help="let each auction window expire instead of closing it once offers are in",
    )

    score_p = sub.add_parser("score", help="print the score breakdown for an offer")
    score_p.add_argument("--price", type=_positive_int, required=True)
    score_p.add_argument("--eta", type=_positive_int, required=True, help="ETA in seconds")
    score_p.add_argument("--reputation", type=float, default=3.0)

    config_p = sub.add_parser("config", help="configuration utilities")
    config_sub = config_p.add_subparsers(dest="config_cmd", required=True)
    config_sub.add_parser("show", help="print the effective settings")

    args = parser.parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)

    if args.cmd == "config":
        if args.config_cmd == "show":
            _print_json(_settings_dict(settings))
            return 0
        raise AssertionError(f"unhandled config cmd: {args.config_cmd}")

    if args.cmd == "score":
        if not (0.0 <= args.reputation <= 5.0):
            parser.error("--reputation must be between 0 and 5")
        breakdown = OfferScorer(settings.scoring).breakdown(
            price=args.price, eta_seconds=args.eta, reputation=args.reputation
        )
        _print_json(breakdown)
        return 0

    if args.cmd == "simulate":
        overrides: dict[str, Any] = {}
        if args.window_ms is not None:
            overrides["auction_window_ms"] = args.window_ms
        if args.ledger is not None:
            overrides["payment_ledger_path"] = args.ledger
        if overrides:
            settings = dataclasses.replace(settings, **overrides)

        spec = load_scenario(args.scenario)
        market = Market(settings)
        try:
            report = run_scenario(market, spec, wait_for_window=args.wait)
        finally:
            market.shutdown()
        _print_json(report.to_dict())
        return 0

    raise AssertionError(f"unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
