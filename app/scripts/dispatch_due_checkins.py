"""Periodic dispatcher for due check-ins.
Run via Railway schedule (or any cron) every few minutes:
    python -m app.scripts.dispatch_due_checkins [--limit N] [--dry-run]
"""

from __future__ import annotations

import argparse
import asyncio
import logging

import db
from app.services.dispatch import normalize_limit
from app.services.factory import build_dispatch_engine
from app.types.checkin_contract import DispatchResult
from config import settings


async def main(limit: int, dry_run: bool = False) -> DispatchResult:
    try:
        return await build_dispatch_engine().dispatch_due(limit=limit, dry_run=dry_run)
    finally:
        await db.dispose_engine()


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send due check-in messages.")
    parser.add_argument("--limit", default=settings.CHECKINS_DISPATCH_LIMIT)
    parser.add_argument("--dry-run", action="store_true")
    return parser.parse_args(argv)


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(level=settings.LOG_LEVEL)
    args = _parse_args()
    print("[CRON] dispatch_due_checkins: job started")
    try:
        result = asyncio.run(main(normalize_limit(args.limit), dry_run=args.dry_run))
        print(f"[CRON] dispatch_due_checkins: job completed successfully {result.model_dump()}")
    except Exception as e:
        print(f"[CRON] dispatch_due_checkins: job failed: {e}")
        raise SystemExit(1)
