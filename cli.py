#!/usr/bin/env python3
"""CLI for running DCA cycles locally or from a scheduler"""

import argparse
import asyncio
import sys
from typing import List, Optional

from dca_engine.config import settings
from dca_engine.core.strategies.dca import BatchOrchestrator, CycleResult, get_ledger
from dca_engine.logging_config import setup_logging


def print_result(result: CycleResult):
    """Pretty print a cycle result"""
    if result.fatal:
        print(f"\n❌ Cycle {result.cycle_id} aborted: {result.error}")
        return

    mode = "Simulation" if result.simulated else "Cycle"
    print(f"\n📊 {mode} {result.cycle_id} ({result.cycle_date})")
    print("=" * 50)
    if result.signal:
        print(f"Signal: {result.signal['value']} {result.signal['classification']} [{result.signal['source']}]")
    elif result.error:
        print(f"Signal: unavailable ({result.error})")
    print(f"Action: {result.action.upper()}")

    if result.action == "hold":
        return

    counts = result.counts
    print(f"Succeeded: {counts.succeeded}  Failed: {counts.failed}  Pending: {counts.pending}  Skipped: {counts.skipped}")

    if result.simulation:
        print("\nWallets:")
        print("-" * 50)
        for row in result.simulation:
            print(f"{row.outcome.value:<5} {row.wallet}  {row.detail}")

    if result.records:
        print("\nRecords:")
        print("-" * 50)
        for record in result.records:
            line = f"{record.status.value:<8} {record.wallet}"
            if record.tx_hash:
                line += f"  tx={record.tx_hash}"
            if record.error_message:
                line += f"  [{record.stage.value if record.stage else '-'}] {record.error_message}"
            print(line)

    if result.fees_pending_reconciliation:
        print(f"\n⚠️  Fees pending reconciliation: {result.fees_pending_reconciliation}")


async def cli_run(wallet: Optional[str], simulate: bool) -> int:
    """Run one cycle and return the process exit code"""
    orchestrator = BatchOrchestrator(ledger=get_ledger())
    print(f"🔄 {'Simulating' if simulate else 'Running'} DCA cycle ({settings.submission_mode} mode)...")
    result = await orchestrator.run_cycle(wallet_filter=wallet, simulate=simulate)
    print_result(result)
    return 1 if result.fatal else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DCA Engine CLI")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run one DCA cycle")
    run_parser.add_argument("--wallet", help="Only process this smart account or owner address")

    simulate_parser = subparsers.add_parser("simulate", help="Dry run: quote and validate, submit nothing")
    simulate_parser.add_argument("--wallet", help="Only process this smart account or owner address")

    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging(args.log_level)
    command = args.command.lower()

    if command == "run":
        return await cli_run(args.wallet, simulate=False)

    elif command == "simulate":
        return await cli_run(args.wallet, simulate=True)

    print(f"❌ Unknown command: {command}")
    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
