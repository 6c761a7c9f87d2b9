"""order_executor.py — proposal-queue consumer.

Claims PENDING proposals from the Gofer queue, submits each one through the
Chain Gateway and moves it to RESOLVED (with the tx hash) or FAILED (with the
error).  Nothing is retried here: a FAILED proposal stays failed and a new
trigger has to propose again.

A consumer that dies between claim and transition leaves the claim behind;
it expires after CLAIM_TIMEOUT_SECONDS and the periodic sweep clears it, so
the proposal is picked up again by any executor.

Usage
-----
    python workers/order_executor.py --executor-id executor-1
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

# ---------------------------------------------------------------------------
# Make sure project root is on sys.path when run directly
# ---------------------------------------------------------------------------
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from adapters.chain_gateway import ChainGateway, call_with_timeout
from core.errors import InvalidTransitionError, TradingError
from database.proposal_queue import TxGofer
from models.proposed_order import ProposedOrder

LOGGER = logging.getLogger("order_executor")

# How long to sleep between polling cycles when no proposals are pending
_POLL_INTERVAL = 2.0
# How often (in poll cycles) to sweep expired claims
_SWEEP_EVERY = 30


async def execute_one(
    gofer: TxGofer,
    gateway: ChainGateway,
    executor_id: str,
    *,
    gateway_timeout: float = 15.0,
) -> Optional[ProposedOrder]:
    """Claim and execute at most one proposal; returns it, or None when idle."""
    order = await gofer.claim_next(executor_id)
    if order is None:
        return None

    try:
        receipt = await call_with_timeout(
            gateway.submit_order(order), gateway_timeout, f"submit_order({order.id})"
        )
    except TradingError as exc:
        error_msg = f"{type(exc).__name__}: {exc}"
        LOGGER.error("[%s] Proposal %s failed: %s", executor_id, order.id, error_msg)
        await gofer.mark_failed(order.id, executor_id, error_msg)
        return order

    tx_hash = receipt.get("transactionHash") or receipt.get("tx_hash")
    await gofer.mark_resolved(order.id, executor_id, tx_hash)
    return order


async def run_executor(
    gofer: TxGofer,
    gateway: ChainGateway,
    executor_id: str,
    *,
    gateway_timeout: float = 15.0,
    poll_interval: float = _POLL_INTERVAL,
    max_cycles: Optional[int] = None,
) -> None:
    """Poll for pending proposals and execute them until interrupted."""
    LOGGER.info("[%s] Executor started — polling every %.1fs", executor_id, poll_interval)

    cycle = 0
    while max_cycles is None or cycle < max_cycles:
        try:
            order = await execute_one(gofer, gateway, executor_id, gateway_timeout=gateway_timeout)
        except InvalidTransitionError as exc:
            # claim expired and another executor finished the order first
            LOGGER.warning("[%s] %s", executor_id, exc)
            order = None
        except TradingError as exc:
            LOGGER.warning("[%s] queue error: %s", executor_id, exc)
            order = None

        if order is None:
            await asyncio.sleep(poll_interval)

        cycle += 1
        if cycle % _SWEEP_EVERY == 0:
            try:
                await gofer.release_expired_claims()
            except TradingError as exc:
                LOGGER.debug("[%s] sweep error: %s", executor_id, exc)


def main() -> None:
    from adapters.chain_gateway import HttpChainGateway
    from logging_config import setup_logging
    from trading_config import load_trading_environment

    parser = argparse.ArgumentParser(description="Proposed-order executor")
    parser.add_argument(
        "--executor-id",
        default=f"executor-{os.getpid()}",
        help="Unique identifier for this executor instance",
    )
    args = parser.parse_args()

    setup_logging("order_executor")
    config = load_trading_environment()
    gofer = TxGofer(
        config.proposal_db_url,
        TxGofer.ROLE_CONSUMER,
        claim_timeout_seconds=config.claim_timeout_seconds,
        io_timeout_seconds=config.queue_timeout_seconds,
    )
    gateway = HttpChainGateway(config.chain_gateway_url, timeout=config.gateway_timeout_seconds)

    try:
        asyncio.run(
            run_executor(gofer, gateway, args.executor_id, gateway_timeout=config.gateway_timeout_seconds)
        )
    except KeyboardInterrupt:
        LOGGER.info("[%s] Executor stopped by user.", args.executor_id)


if __name__ == "__main__":
    main()
