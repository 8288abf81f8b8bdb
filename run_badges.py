#!/usr/bin/env python3
"""
HolderRank Badge Run
═══════════════════════════════════════════════════════════════════════════════
Decides which social handles hold the basic / upgraded badge and writes
badges.json to the output folder.

Usage:
    python run_badges.py --config config.toml
    python run_badges.py --config config.toml --verbose
    python run_badges.py --config config.toml --loop --interval-hours 6 --retry-minutes 15

Environment Variables (in .env file):
    RPC_AVALANCHE=https://api.avax.network/ext/bc/C/rpc
"""

import argparse
import asyncio
import logging

from config import ConfigError, load_run_config
from pipeline import RetryFailure, RunContext, RunInProgressError, run_badges, run_scheduled


def print_summary(result) -> None:
    print(f"  Basic badge holders: {len(result.basic_handles):,}")
    print(f"  Basic addresses: {len(result.basic_addresses):,}")
    if result.upgraded_handles is not None:
        print(f"  Upgraded badge holders: {len(result.upgraded_handles):,}")
        print(f"  Upgraded addresses: {len(result.upgraded_addresses or []):,}")
    print(f"  Timestamp: {result.timestamp}")


def main():
    parser = argparse.ArgumentParser(
        description="HolderRank Badges - Evaluate badge tiers for token holders"
    )
    parser.add_argument(
        "--config", type=str, default="config.toml", help="Path to config.toml file"
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
        default=6.0,
        help="Hours between runs in --loop mode (default: 6)",
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
        config.require_badges()
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    print("═" * 60)
    print(f"HolderRank Badges: {config.project.name}")
    print("═" * 60)
    print(f"Chain: {config.project.chain}")
    print(f"Output folder: {config.project.output_folder}")
    print()

    context = RunContext()

    if args.loop:
        async def run_once():
            result = await run_badges(config, context=context)
            print("─" * 60)
            print_summary(result)

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
        result = asyncio.run(run_badges(config, context=context))
    except ConfigError as e:
        print(f"Error: {e}")
        return 1
    except RetryFailure as e:
        print(f"Error: lookups kept failing, nothing was written: {e}")
        return 1

    print("─" * 60)
    print_summary(result)
    print("\n✓ Done!")
    return 0


if __name__ == "__main__":
    exit(main())
