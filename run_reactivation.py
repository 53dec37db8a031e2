#!/usr/bin/env python3
"""
Standalone script to run the bot reactivation check once for a company
Usage: python3 run_reactivation.py C_NAME [--dry-run]
"""
import asyncio
import logging
import sys

from virtualvoices.database import dispose_tenant_engines
from virtualvoices.services.reactivation_scheduler import run_bot_reactivation_once

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)


def parse_args(argv):
    args = [a for a in argv if a != "--dry-run"]
    if len(args) != 1:
        return None, False
    return args[0], "--dry-run" in argv


def main(argv=None) -> int:
    c_name, dry_run = parse_args(sys.argv[1:] if argv is None else argv)
    if not c_name:
        print("Usage: python3 run_reactivation.py C_NAME [--dry-run]")
        return 1

    try:
        stats = asyncio.run(run_bot_reactivation_once(c_name, dry_run=dry_run))
    finally:
        dispose_tenant_engines()

    mode = "DRY RUN" if dry_run else "LIVE"
    print(f"✅ [{mode}] {c_name}: checked={stats.total_checked} reactivated={stats.reactivated} failed={stats.failed}")
    return 0 if not stats.errors else 2


if __name__ == "__main__":
    sys.exit(main())
