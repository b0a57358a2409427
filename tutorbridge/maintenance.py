"""Delete refresh credentials that are both expired and revoked.

Usage:
    tutorbridge-sweep
    tutorbridge-sweep --now 2026-01-01T00:00:00+00:00

Reads the same environment as the server (DATABASE_URL, USE_MEMORY_STORE,
SHARED_FS_ROOT, ...). Credentials that are only expired, or only revoked,
are left alone; the refresh path already rejects them.
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from typing import Optional, Sequence

from tutorbridge.logging import get_logger

logger = get_logger(__name__)


def _parse_timestamp(raw: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {raw}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tutorbridge-sweep",
        description="Sweep dead refresh credentials",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--now",
        type=_parse_timestamp,
        default=None,
        help="Treat this instant as the current time (default: now)",
    )
    return parser


async def sweep(runtime, now: Optional[datetime] = None) -> int:
    try:
        return await runtime.auth.sweep_expired_credentials(now)
    finally:
        await runtime.aclose()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # Import here so the environment is read only after argument parsing
    from tutorbridge.service.runtime import Runtime

    try:
        removed = asyncio.run(sweep(Runtime.from_settings(), args.now))
    except Exception as exc:
        logger.error("credential_sweep_failed", error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Removed {removed} refresh credential(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
