"""Fold the legacy question list into question records and the duplicate index."""

from __future__ import annotations

import argparse
import logging

from question_bank.legacy import migrate_legacy_questions
from question_bank.supabase_client import get_supabase_client


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Migrate legacy question blobs into the current question tables."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be created or merged without writing anything.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log every skipped or repaired entry.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    client = get_supabase_client(service_role=True)
    report = migrate_legacy_questions(client, dry_run=args.dry_run)

    print(
        f"created={report.created} merged={report.merged} "
        f"unchanged={report.unchanged} skipped={report.skipped}"
    )


if __name__ == "__main__":
    main()
