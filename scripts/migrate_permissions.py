#!/usr/bin/env python3
"""
Apply baseline collection permissions computed from the role catalog.

    python scripts/migrate_permissions.py --dry-run
    python scripts/migrate_permissions.py --collection patients --backup backup.json
    python scripts/migrate_permissions.py --rollback backup.json
"""

import argparse
import sys

from authz.config import MIGRATION_DRY_RUN
from authz.engine import build_engine
from authz.exceptions import AuthorizationError


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Migrate collection permissions")
    parser.add_argument("--dry-run", action="store_true", default=MIGRATION_DRY_RUN,
                        help="compute and print target grants without applying them")
    parser.add_argument("--collection", help="migrate a single collection")
    parser.add_argument("--backup", metavar="PATH", help="write current grants to PATH first")
    parser.add_argument("--rollback", metavar="PATH", help="restore grants from a backup file")
    return parser.parse_args(argv)


def main(argv=None, engine=None):
    args = parse_args(argv)
    print("=" * 70)
    print("Collection Permissions Migration")
    print("=" * 70)

    engine = engine or build_engine(audit=False)
    migrator = engine.migrator

    try:
        if args.rollback:
            outcome = migrator.rollback(args.rollback)
            print(f"[rollback] Restored: {', '.join(outcome['restored']) or '-'}")
            if outcome["failed"]:
                print(f"[rollback] Failed:   {', '.join(outcome['failed'])}")
                return 1
            return 0

        report = migrator.validate_current_state()
        print(f"[validate] Known collections:   {len(report.known)}")
        for name in report.missing:
            print(f"[validate] Missing collection: {name}")
        for name in report.unknown:
            print(f"[validate] Unknown collection: {name}")

        if args.backup:
            migrator.backup_current_permissions(args.backup)
            print(f"[backup] Written to {args.backup}")

        if args.dry_run:
            print("[mode] DRY-RUN – no changes will be applied")

        if args.collection:
            results = [migrator.migrate_collection_permissions(args.collection, dry_run=args.dry_run)]
        else:
            results = migrator.migrate_all(dry_run=args.dry_run)
    except (AuthorizationError, OSError, ValueError) as e:
        print(f"\n[ERROR] Migration failed: {e}", file=sys.stderr)
        return 1

    for result in results:
        status = "unchanged" if not result.changed else ("would update" if result.dry_run else "updated")
        print(f"\n[{result.resource}] {status} ({len(result.new_grants)} grants)")
        for grant in result.new_grants:
            print(f"    {grant}")

    print("\n" + "=" * 70)
    return 0


if __name__ == "__main__":
    sys.exit(main())
