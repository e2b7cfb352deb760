from __future__ import annotations

import argparse
import asyncio
import json
import logging
from datetime import date
from pathlib import Path
from typing import Optional

from .adapters import import_pm_fees
from .scheduler import today_in
from .services import build_services
from .settings import DEFAULT_SETTINGS, configure_logging

logger = logging.getLogger(__name__)


def run_auto(run_date: Optional[date] = None, force: bool = False) -> dict:
    """Run every due tag schedule once for `run_date` (default: today in the configured timezone)."""
    s = DEFAULT_SETTINGS
    svc = build_services(s)
    day = run_date or today_in(s.timezone)
    result = asyncio.run(svc.scheduler.run_for_date(day, force=force))
    for run in result["runs"]:
        print(
            f"{run['tag']} {run['period_start']}..{run['period_end']}: "
            f"{len(run['generated'])} generated, {len(run['skipped'])} skipped, {len(run['errors'])} errors"
        )
    if not result["runs"]:
        print(f"No cadence tags due on {day.isoformat()}")
    return result


def run_import_pm_fees(csv_path: Path) -> dict:
    svc = build_services(DEFAULT_SETTINGS)
    result = asyncio.run(import_pm_fees(svc.source, csv_path)).to_dict()
    print(json.dumps(result, indent=2))
    return result


def main(argv=None):
    ap = argparse.ArgumentParser(description="Owner statement generation")
    ap.add_argument("--mode", choices=["auto", "import-pm-fees"], default="auto")
    ap.add_argument("--date", help="Run date (YYYY-MM-DD) for --mode auto")
    ap.add_argument("--force", action="store_true", help="Re-run tags already triggered for the period")
    ap.add_argument("--csv", help="PM fee CSV for --mode import-pm-fees")
    args = ap.parse_args(argv)

    configure_logging(DEFAULT_SETTINGS)

    if args.mode == "auto":
        run_date = date.fromisoformat(args.date) if args.date else None
        run_auto(run_date, force=args.force)
    elif args.mode == "import-pm-fees":
        if not args.csv:
            ap.error("--csv is required for --mode import-pm-fees")
        run_import_pm_fees(Path(args.csv))


if __name__ == "__main__":
    main()
