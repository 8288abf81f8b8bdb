#!/usr/bin/env python3
"""
HolderRank Leaderboard Run
═══════════════════════════════════════════════════════════════════════════════
Scores social handles by their combined holdings and writes the ranked
leaderboard (standard_leaderboard.json or mu_leaderboard.json) to the output
folder.

Usage:
    python run_leaderboard.py --config config.toml
    python run_leaderboard.py --config config.toml --top 25
    python run_leaderboard.py --config config.toml --loop --interval-hours 1

Environment Variables (in .env file):
    RPC_AVALANCHE=https://api.avax.network/ext/bc/C/rpc
"""

import argparse
import asyncio
import logging

from config import ConfigError, load_run_config
from pipeline import (
    RetryFailure,
    RunContext,
    RunInProgressError,
    run_leaderboard,
    run_scheduled,
)


def print_top(leaderboard, top: int) -> None:
    print(f"  Entries: {len(leaderboard.entries):,}")
    print(f"  Timestamp: {leaderboard.timestamp}")
    if not leaderboard.entries or top <= 0:
        return
    print()
    print(f"  {'Rank':>4}  {'Handle':<24} {'Points':>14}")
    for entry in leaderboard.entries[:top]:
        print(f"  {entry.rank:>4}  {entry.handle:<24} {entry.total_points:>14,.2f}")


def main():
    parser = argparse.ArgumentParser(
        description="HolderRank Leaderboard - Rank token holders by points"
    )
    parser.add_argument(
        "--config", type=str, default="config.toml", help="Path to config.toml file"
    )
    parser.add_argument(
        "--top", type=int, default=10, help="Entries to print (default: 10)"
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Log every per-address decision"
    )
    parser.add_argument(
        "--loop", action="store_true", help="Keep running on an interval"
    )
    parser.add_argument(
        "--interval-hours",
        type=float,
        default=1.0,
        help="Hours between runs in --loop mode (default: 1)",
    )
    parser.add_argument(
        "--retry-minutes",
        type=float,
        default=15.0,
        help="Minutes before retrying after a retry failure (default: 15)",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_run_config(args.config)
        settings = config.require_leaderboard()
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    print("═" * 60)
    print(f"HolderRank Leaderboard: {config.project.name}")
    print("═" * 60)
    print(f"Strategy: {settings.strategy}")
    print(f"Sum of balances: {'yes' if settings.sum_of_balances else 'no'}")
    print(f"Output: {config.project.output_folder / settings.output_file_name}")
    print()

    context = RunContext()

    if args.loop:
        async def run_once():
            leaderboard = await run_leaderboard(config, context=context)
            print("─" * 60)
            print_top(leaderboard, args.top)

        try:
            asyncio.run(
                run_scheduled(
                    run_once,
                    context,
                    interval_seconds=args.interval_hours * 3600,
                    retry_seconds=args.retry_minutes * 60,
                )
            )
        except (ConfigError, RunInProgressError) as e:
            print(f"Error: {e}")
            return 1
        except KeyboardInterrupt:
            print("\nStopped.")
        return 0

    try:
        leaderboard = asyncio.run(run_leaderboard(config, context=context))
    except ConfigError as e:
        print(f"Error: {e}")
        return 1
    except RetryFailure as e:
        print(f"Error: lookups kept failing, nothing was written: {e}")
        return 1

    print("─" * 60)
    print_top(leaderboard, args.top)
    print("\n✓ Done!")
    return 0


if __name__ == "__main__":
    exit(main())
