"""Run one recurring-rule processing pass, for use from cron or a scheduler."""

import argparse
import logging
import os
import sys
from datetime import date

from sqlalchemy import create_engine

from backend.recurring_processor import process_due_rules
from backend.settings import get_database_url, get_rule_timeout


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--database-url",
        default=get_database_url(),
    )
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Reference date in YYYY-MM-DD format (defaults to the current date).",
    )
    parser.add_argument(
        "--rule-timeout",
        type=float,
        default=None,
        help=(
            "Seconds allowed per rule; 0 disables the limit "
            "(defaults to RECURRING_RULE_TIMEOUT_SECONDS)."
        ),
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    rule_timeout = args.rule_timeout if args.rule_timeout is not None else get_rule_timeout()
    engine = create_engine(args.database_url)
    try:
        result = process_due_rules(
            engine,
            args.today or date.today(),
            rule_timeout=rule_timeout or None,
        )
    finally:
        engine.dispose()

    print(
        f"scanned={result.scanned} materialized={result.materialized} "
        f"failed={len(result.failures)}"
    )
    for failure in result.failures:
        print(f"rule {failure.rule_id}: {failure.kind}: {failure.reason}", file=sys.stderr)
    return 1 if result.failures else 0


if __name__ == "__main__":
    sys.exit(main())
