#!/usr/bin/env python3
"""
bits_cli.py — operator views over the position store and the proposal queue.

Sub-commands
------------
  balance   Non-zero bit balances of one holder.
  pandl     Top holders by absolute profit (optionally from a strategy block).
  pending   PENDING proposals waiting for an executor.

Quick examples
--------------
  python scripts/bits_cli.py balance 0x1234…
  python scripts/bits_cli.py pandl --start-block 18500000 --top 20
  python scripts/bits_cli.py pandl --portfolio alpha
  python scripts/bits_cli.py pending --side SELL
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

# ── add repo root to path so local imports work when run from any cwd ──────────
_REPO = Path(__file__).resolve().parent.parent
if str(_REPO) not in sys.path:
    sys.path.insert(0, str(_REPO))

from core.errors import TradingError
from core.fleet import KeyFleet
from core.valuation import PandLReport, ValuationEngine
from database.portfolio_store import PortfolioStore
from database.position_store import PositionStore
from database.proposal_queue import ROLE_PRODUCER, TxGofer
from trading_config import TradingEnvironmentConfig, load_trading_environment

# ═══════════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════════

LINE_FILL = "─"


def _hr(width: int = 100) -> str:
    return LINE_FILL * width


def leaderboard(report: PandLReport, top: int = 20) -> list[tuple[str, float, float, float]]:
    """(holder, absolute, percent, investment) rows, best absolute profit first."""
    rows = [
        (holder, p.absolute_profit, p.percent_profit, p.adjusted_initial_investment)
        for holder, p in report.holders.items()
    ]
    rows.sort(key=lambda row: row[1], reverse=True)
    return rows[:top]


# ═══════════════════════════════════════════════════════════════════════════════
# Commands
# ═══════════════════════════════════════════════════════════════════════════════

async def cmd_balance(args: argparse.Namespace, config: TradingEnvironmentConfig) -> int:
    store = PositionStore(config.position_db_path)
    full_store = await store.get_full_store([args.holder])
    positions = next(iter(full_store.values()), {})
    held = {gamer: p.quantity for gamer, p in positions.items() if p.quantity > 0}
    if args.as_json:
        print(json.dumps(held, indent=2))
        return 0
    print(f"  {'Gamer':<44}{'Balance':>10}")
    print(_hr(56))
    for gamer, quantity in sorted(held.items(), key=lambda item: item[1], reverse=True):
        print(f"  {gamer:<44}{quantity:>10}")
    return 0


async def cmd_pandl(args: argparse.Namespace, config: TradingEnvironmentConfig) -> int:
    portfolios = PortfolioStore(config.portfolio_db_path)
    engine = ValuationEngine(
        PositionStore(config.position_db_path), KeyFleet(portfolios, config.default_key_fleet)
    )
    if args.portfolio:
        report = await engine.compute_for_portfolio(args.portfolio, args.start_block)
    else:
        report = await engine.compute_for_holders(None, args.start_block)

    if args.as_json:
        print(json.dumps(report.to_dict(), indent=2))
        return 0
    print(f"  {'Holder':<44}{'Absolute Profit':>18}{'Percent':>10}{'Adj. Investment':>20}")
    print(_hr())
    for holder, absolute, percent, investment in leaderboard(report, args.top):
        print(f"  {holder:<44}{absolute:>18.6f}{percent:>9.2f}%{investment:>20.6f}")
    print(_hr())
    total = report.total
    print(
        f"  {'TOTAL':<44}{total.absolute_profit:>18.6f}{total.percent_profit:>9.2f}%"
        f"{total.adjusted_initial_investment:>20.6f}"
    )
    return 0


async def cmd_pending(args: argparse.Namespace, config: TradingEnvironmentConfig) -> int:
    gofer = TxGofer(config.proposal_db_url, ROLE_PRODUCER, io_timeout_seconds=config.queue_timeout_seconds)
    orders = await gofer.list_pending(gamer=args.gamer, side=args.side)
    if args.as_json:
        print(json.dumps([o.model_dump(mode="json") for o in orders], indent=2))
        return 0
    print(f"  {'ID':>6}  {'Side':<5}{'Gamer':<44}{'Qty':>6}  {'Holder':<44}{'Claimed by':<16}")
    print(_hr(130))
    for o in orders:
        print(
            f"  {o.id:>6}  {o.side:<5}{o.gamer:<44}{o.quantity:>6}  {(o.holder or '-'):<44}"
            f"{(o.claimed_by or '-'):<16}"
        )
    return 0


# ═══════════════════════════════════════════════════════════════════════════════
# Entry point
# ═══════════════════════════════════════════════════════════════════════════════

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bits_cli",
        description="Bits positions, P&L and proposal queue.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    b = sub.add_parser("balance", help="Bit balances of one holder")
    b.add_argument("holder")
    b.add_argument("--json", dest="as_json", action="store_true")

    pl = sub.add_parser("pandl", help="Top holders by absolute profit")
    pl.add_argument("--start-block", type=int, default=None,
                    help="Ignore batches bought before this block")
    pl.add_argument("--portfolio", default=None, help="Only this portfolio's key fleet")
    pl.add_argument("--top", type=int, default=20)
    pl.add_argument("--json", dest="as_json", action="store_true")

    pe = sub.add_parser("pending", help="PENDING proposals")
    pe.add_argument("--gamer", default=None)
    pe.add_argument("--side", choices=["BUY", "SELL"], default=None)
    pe.add_argument("--json", dest="as_json", action="store_true")
    return p


_COMMANDS = {
    "balance": cmd_balance,
    "pandl": cmd_pandl,
    "pending": cmd_pending,
}


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_trading_environment()
    try:
        return asyncio.run(_COMMANDS[args.cmd](args, config))
    except TradingError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
