#!/usr/bin/env python3
"""Move notes stored in the old per-note directory layouts into the current layout.

Usage:
    python scripts/migrate_legacy_notes.py                 # dry run, all users
    python scripts/migrate_legacy_notes.py --apply         # migrate all users
    python scripts/migrate_legacy_notes.py --user alice --apply
    python scripts/migrate_legacy_notes.py --data-dir /srv/notevault/data --apply
"""

import argparse
import logging
import sys
from pathlib import Path

from notevault.config import config
from notevault.exceptions import NotevaultError
from notevault.storage.migration import LegacyMigrator
from notevault.storage.user_store import UserStore

logger = logging.getLogger("migrate_legacy_notes")


def parse_args():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--data-dir", help="Data directory (default: from config)")
    parser.add_argument("--user", help="Only migrate this user")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Write changes (default is a dry run)",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if args.data_dir:
        config.data_dir = Path(args.data_dir)

    migrator = LegacyMigrator(UserStore())
    dry_run = not args.apply
    try:
        if args.user:
            reports = [migrator.migrate_user(args.user, dry_run=dry_run)]
        else:
            reports = migrator.migrate_all(dry_run=dry_run)
    except NotevaultError as e:
        logger.error(str(e))
        return 1

    failed = 0
    for report in reports:
        print(
            f"{report.user_id}: {len(report.migrated)} "
            f"{'to migrate' if dry_run else 'migrated'}, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
        )
        for note_id in report.failed:
            print(f"  failed: {note_id}")
        failed += len(report.failed)

    if dry_run:
        print("\nDry run: nothing was changed. Re-run with --apply to migrate.")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
