#!/usr/bin/env python3
"""Lister runner — CLI entry point.

Connects to the RPC endpoint, checks marketplace approvals, then runs one
of the listing strategies until the supply or balance is exhausted, the
killswitch is armed, or the process receives SIGINT/SIGTERM.

Usage:
    python3 -m lister.run_lister --strategy bonding-curve
    python3 -m lister.run_lister --strategy hourly --dry-run
    python3 -m lister.run_lister --strategy hourly --check
    python3 -m lister.run_lister --strategy bonding-curve --config config/listing.yaml --cycles 6

Exit codes:
    0 = finished, stopped by signal, or check completed
    1 = missing configuration, killswitch active, or fatal error
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from lister.clients.marketplace import DryRunMarketplace, MarketClient, MarketplaceClient
from lister.config import apply_gas_overrides, load_config, load_credentials
from lister.errors import ConfigMissing
from lister.guards.killswitch import check_killswitch
from lister.models import Phase
from lister.scheduler import STRATEGIES, build_scheduler
from lister.utils.clock import StopToken, SystemClock
from lister.utils.logsink import setup_logging

log = logging.getLogger("lister.runner")


def _install_signal_handlers(stop: StopToken) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set, sig.name)


async def check_status(client: MarketClient, token_id: int) -> dict[str, Any]:
    """Read-only snapshot of what the scheduler would start from."""
    balance = await client.get_token_balance(client.address, token_id)
    approved = await client.is_marketplace_approved(client.address)
    return {
        "status": "OK",
        "wallet": client.address,
        "marketplace": client.marketplace,
        "token_id": token_id,
        "balance": balance,
        "marketplace_approved": approved,
    }


async def run_lister(
    strategy: str,
    config_path: Path | None = None,
    dry_run: bool = False,
    cycles: int | None = None,
    check: bool = False,
) -> dict[str, Any]:
    config = load_config(config_path)
    setup_logging(config.log_path())
    credentials = load_credentials()
    gas = apply_gas_overrides(config.gas)

    halt = check_killswitch()
    if halt["status"] == "ACTIVE":
        log.warning(halt["message"])
        return {"status": "HALTED", "message": halt["message"]}

    log.info("Using RPC URL: %s", credentials.rpc_url)
    client = MarketplaceClient.from_credentials(
        credentials, config.nft_contract, config.marketplace, gas=gas
    )
    try:
        await client.connect()
        token_id = (
            config.bonding_curve.token_id if strategy == "bonding-curve" else config.hourly.token_id
        )
        if check:
            return await check_status(client, token_id)

        market: MarketClient = DryRunMarketplace(client) if dry_run else client
        stop = StopToken()
        _install_signal_handlers(stop)
        clock = SystemClock(stop, tz=ZoneInfo(config.timezone) if config.timezone else None)
        scheduler = build_scheduler(strategy, market, config, clock, stop=stop)
        state = await scheduler.run(max_cycles=cycles)
    finally:
        await client.close()

    result: dict[str, Any] = {
        "status": "DONE" if state.phase is Phase.DONE else "STOPPED",
        "strategy": strategy,
        "dry_run": dry_run,
        "cycles": state.cycle,
        "listings": state.listing_count,
        "balance": state.balance,
        "last_error": state.last_error,
    }
    if state.curve is not None:
        result["sold_count"] = state.curve.sold_count
        result["last_index"] = state.curve.last_index
    if stop.reason:
        result["stop_reason"] = stop.reason
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description="Lister — scheduled NFT marketplace listings")
    parser.add_argument("--strategy", required=True, choices=sorted(STRATEGIES))
    parser.add_argument("--config", type=Path, default=None, help="Path to listing.yaml")
    parser.add_argument("--dry-run", action="store_true", help="Read the chain, never send transactions")
    parser.add_argument("--cycles", type=int, default=None, help="Stop after N scheduling cycles")
    parser.add_argument("--check", action="store_true", help="Report balance and approval, then exit")
    args = parser.parse_args()

    load_dotenv(override=True)

    try:
        result = asyncio.run(run_lister(
            strategy=args.strategy,
            config_path=args.config,
            dry_run=args.dry_run,
            cycles=args.cycles,
            check=args.check,
        ))
    except ConfigMissing as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        log.critical("Fatal error: %s", e)
        log.critical("Process terminated due to critical error.")
        print(json.dumps({"status": "FAILED", "error": str(e)}, indent=2))
        sys.exit(1)

    print(json.dumps(result, indent=2))
    sys.exit(1 if result["status"] == "HALTED" else 0)


if __name__ == "__main__":
    main()
