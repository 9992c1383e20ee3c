"""Operator commands for snapshot storage: usage, retention and orphan repair."""

import argparse
import json
import sys
from typing import Optional

from .db import get_session_ctx
from .jobs.scheduler import ensure_schedule
from .models import Bookmark
from .observability.logging import setup_logging
from .snapshots import CleanupResult, SnapshotService
from .snapshots.retention import ORPHAN_REPAIR_JOB_TYPE, bookmarks_with_snapshots

ORPHAN_REPAIR_SCHEDULE = "snapshot-orphan-repair"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="marksnap-admin", description=__doc__)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("quota", help="Print aggregate stored bytes and the configured limit")

    cleanup = sub.add_parser("cleanup", help="Apply retention to one bookmark or to all of them")
    cleanup.add_argument("--bookmark", help="Bookmark id; defaults to every bookmark with snapshots")
    policy = cleanup.add_mutually_exclusive_group()
    policy.add_argument("--keep-count", type=int, help="Keep the N most recent versions (N >= 1)")
    policy.add_argument("--older-than-days", type=int, help="Delete non-latest versions older than D days")

    repair = sub.add_parser("repair-orphans", help="Reconcile metadata rows and stored blobs")
    repair.add_argument("--bookmark", help="Only check rows of this bookmark")

    schedule = sub.add_parser("schedule-orphan-repair", help="Create or update the periodic orphan repair job")
    schedule.add_argument("--frequency", default="1d", help="Interval such as 6h or 1d")
    return parser


def _cleanup(session, service: SnapshotService, args) -> CleanupResult:
    if args.keep_count is not None and args.keep_count < 1:
        raise SystemExit("--keep-count must be at least 1")
    if args.older_than_days is not None and args.older_than_days < 1:
        raise SystemExit("--older-than-days must be at least 1")
    if args.bookmark:
        targets = [args.bookmark]
    else:
        targets = bookmarks_with_snapshots(session)
    total = CleanupResult()
    retention = service.retention
    for bookmark_id in targets:
        bookmark = session.get(Bookmark, bookmark_id)
        if bookmark is None:
            continue
        owner_id = bookmark.owner_user_id
        if args.keep_count is not None:
            result = retention.apply_keep_count(
                session, bookmark_id=bookmark_id, owner_id=owner_id, keep_count=args.keep_count
            )
        elif args.older_than_days is not None:
            result = retention.apply_age(
                session, bookmark_id=bookmark_id, owner_id=owner_id, older_than_days=args.older_than_days
            )
        else:
            result = retention.run_policies(session, bookmark_id=bookmark_id, owner_id=owner_id)
        total.merge(result)
    total.message = f"Deleted {total.deleted_count} snapshots across {len(targets)} bookmarks"
    return total


def main(argv=None, service: Optional[SnapshotService] = None) -> int:
    args = _build_parser().parse_args(argv if argv is not None else sys.argv[1:])
    setup_logging()
    service = service or SnapshotService.from_env()

    with get_session_ctx() as session:
        if args.command == "quota":
            output = service.quota.check(session, 0).as_dict()
            output.pop("allowed", None)
        elif args.command == "cleanup":
            output = _cleanup(session, service, args).as_dict()
        elif args.command == "repair-orphans":
            result = service.retention.repair_orphans(session, bookmark_id=args.bookmark)
            output = result.as_dict()
            output["images_deleted"] = result.images_deleted
            output["blobs_deleted"] = result.blobs_deleted
        else:
            try:
                schedule = ensure_schedule(
                    session,
                    schedule_name=ORPHAN_REPAIR_SCHEDULE,
                    job_type=ORPHAN_REPAIR_JOB_TYPE,
                    frequency=args.frequency,
                )
            except ValueError as exc:
                print(f"Invalid frequency: {exc}", file=sys.stderr)
                return 2
            session.commit()
            session.refresh(schedule)
            output = {
                "schedule_name": schedule.schedule_name,
                "job_type": schedule.job_type,
                "frequency": schedule.frequency,
                "next_run_at": schedule.next_run_at.isoformat() if schedule.next_run_at else None,
            }
    print(json.dumps(output, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
