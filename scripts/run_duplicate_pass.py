#!/usr/bin/env python3
"""Run one duplicate detection pass from the command line.

Loads settings from the environment (and .env), runs a pass against the
configured Firestore prefix and prints the summary as JSON.

Usage:
    python scripts/run_duplicate_pass.py
    python scripts/run_duplicate_pass.py --year 2025 --month 3 --dry-run
    python scripts/run_duplicate_pass.py --list-groups

Exit codes:
    0  pass completed
    1  oracle unavailable (retryable)
    2  persistence failed or the pass could not run
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Iterable, Optional

from src.common.env import load_env
from src.duplicate_detection.duplicate_service import DuplicateDetectionService
from src.duplicate_detection.models import PassStatus, TriggeredBy

EXIT_CODES = {
    PassStatus.COMPLETED: 0,
    PassStatus.ORACLE_UNAVAILABLE: 1,
    PassStatus.PERSISTENCE_FAILED: 2,
}


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Group incident records that describe the same underlying issue."
    )
    parser.add_argument("--year", type=int, default=None, help="Only anchor incidents opened in this year.")
    parser.add_argument(
        "--month",
        type=int,
        choices=range(1, 13),
        metavar="{1..12}",
        default=None,
        help="Only anchor incidents opened in this month (requires --year).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute labels without writing them to Firestore.",
    )
    parser.add_argument(
        "--triggered-by",
        choices=[t.value for t in TriggeredBy],
        default=TriggeredBy.MANUAL.value,
        help="Recorded in the run summary.",
    )
    parser.add_argument(
        "--list-groups",
        action="store_true",
        help="Print persisted duplicate groups instead of running a pass.",
    )
    parser.add_argument("--env-file", default=None, help="Path to a .env file (default: search standard locations).")
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.month is not None and args.year is None:
        parser.error("--month requires --year")
    return args


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    load_env(env_file=args.env_file)

    try:
        service = DuplicateDetectionService()

        if args.list_groups:
            groups = service.list_groups()
            print(json.dumps([g.model_dump() for g in groups], indent=2))
            return 0

        summary = service.run_pass(
            year=args.year,
            month=args.month,
            triggered_by=TriggeredBy(args.triggered_by),
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Duplicate detection pass failed: {e}", file=sys.stderr)
        return 2

    print(json.dumps(summary.model_dump(by_alias=True, mode="json"), indent=2))
    return EXIT_CODES[summary.status]


if __name__ == "__main__":
    sys.exit(main())
