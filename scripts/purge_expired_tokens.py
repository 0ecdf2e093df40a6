#!/usr/bin/env python3
"""Delete expired refresh tokens and long-revoked ones.

Run from cron or a scheduled job; token rotation never purges on its own.

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/purge_expired_tokens.py
    python scripts/purge_expired_tokens.py --retention-days 14

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REVOKED_RETENTION_DAYS: Days to keep revoked records (default 30)
"""
from __future__ import annotations

import argparse
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(retention_days: Optional[int] = None) -> int:
    """Purge through the configured runtime and return the number of rows removed."""
    # Import here to avoid loading config before env vars are set
    from refreshguard.logging import get_logger
    from refreshguard.service.runtime import get_runtime

    logger = get_logger("refreshguard.scripts.purge")
    runtime = get_runtime()
    days = (
        retention_days
        if retention_days is not None
        else runtime.settings.revoked_retention_days
    )
    purged = runtime.rotation.purge_expired(timedelta(days=days))
    logger.info("purge_expired_tokens_complete", purged=purged, retention_days=days)
    return purged


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Purge expired and long-revoked refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Keep revoked records this many days (or set REVOKED_RETENTION_DAYS)",
    )
    args = parser.parse_args(argv)

    if args.retention_days is not None and args.retention_days < 0:
        print("Error: --retention-days must not be negative")
        return 1

    try:
        purged = purge(args.retention_days)
    except Exception as e:
        print(f"Error: {e}")
        return 1
    print(f"Purged {purged} refresh token record(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
