#!/usr/bin/env python3
"""
Billing sweep runner

Runs the dunning retry/pause/suspend/cancel stages plus the expiry and
scheduled plan change sweeps. Meant for cron or a scheduler.

Usage:
    python scripts/process_dunning.py
    python scripts/process_dunning.py --dry-run
    python scripts/process_dunning.py --stage retry
"""

import asyncio
import argparse
import json
import sys
from pathlib import Path

# Add project root to the Python path
sys.path.append(str(Path(__file__).parent.parent))

from core.config import get_settings
from core.logger import setup_service_logger
from microservices.subscription_service.factory import create_billing_components
from microservices.subscription_service.sweeps import STAGES


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Process dunning and billing sweeps")
    parser.add_argument("--dry-run", action="store_true", help="Count what would be processed without changing anything")
    parser.add_argument("--stage", choices=STAGES, help="Run a single stage")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    return parser


async def run_sweeps(stage=None, dry_run=False):
    settings = get_settings()
    components = create_billing_components(settings)
    await components.initialize()
    try:
        return await components.sweeps.run(stage=stage, dry_run=dry_run)
    finally:
        await components.close()


def print_summary(summary, as_json: bool = False):
    if as_json:
        print(json.dumps(summary.model_dump(), indent=2))
        return

    prefix = "[dry-run] " if summary.dry_run else ""
    print(f"{prefix}Billing sweep summary")
    print(f"  Payments retried:      {summary.retried}")
    print(f"  Subscriptions paused:  {summary.paused}")
    print(f"  Workspaces suspended:  {summary.suspended}")
    print(f"  Cancelled (non-pay):   {summary.cancelled}")
    print(f"  Expired at period end: {summary.expired}")
    print(f"  Plan changes applied:  {summary.plan_changes_applied}")
    print(f"  Errors:                {summary.errors}")


async def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_service_logger("process_dunning")

    if not get_settings().dunning.enabled:
        print("Dunning is disabled")
        return 0

    try:
        summary = await run_sweeps(stage=args.stage, dry_run=args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        return 1

    print_summary(summary, as_json=args.json)
    return 1 if summary.errors else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
