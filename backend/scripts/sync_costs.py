#!/usr/bin/env python3
"""
Drive the cost synchronizers batch by batch.

  python -m backend.scripts.sync_costs --target sales --limit 500
  python -m backend.scripts.sync_costs --target manufacturing --start-skip 1000

Each batch is idempotent; after a failure rerun with the reported
`--start-skip`.
"""
import argparse
import json
import sys
from datetime import datetime, timezone

from backend.app.config import settings
from backend.app.costing.manufacturing_sync import sync_manufacturing_batch
from backend.app.costing.sync import CostSyncError, sync_batch
from backend.app.db import close_pools

TARGETS = {
    "sales": lambda skip, limit: sync_batch(skip, limit),
    "manufacturing": lambda skip, limit: sync_manufacturing_batch(skip, limit),
}


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def run(sync_fn, *, target: str, start_skip: int, limit: int, max_batches: int = 0) -> dict:
    """
    Advance `skip` by the limit each batch actually used until a short (or
    empty) page comes back.
    Raises CostSyncError from the failing batch.
    """
    skip = start_skip
    batches = 0
    done = False
    totals = {"processed": 0, "ops": 0, "updated": 0, "failed": 0}
    while True:
        res = sync_fn(skip, limit)
        batches += 1
        for k in totals:
            totals[k] += int(res.get(k) or 0)
        _json_log(
            "info",
            "costing.sync_driver.batch",
            target=target,
            skip=skip,
            processed=res.get("processed"),
            ops=res.get("ops"),
            updated=res.get("updated"),
            failed=res.get("failed"),
        )
        processed = int(res.get("processed") or 0)
        # The batch may run with a smaller limit than requested (clamped).
        step = int(res.get("limit") or limit)
        if processed == 0 or processed < step:
            done = True
            break
        skip += step
        if max_batches and batches >= max_batches:
            break
    return {"target": target, "batches": batches, "next_skip": None if done else skip, **totals}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile stored line costs against lot costs")
    parser.add_argument("--target", choices=sorted(TARGETS), default="sales")
    parser.add_argument("--start-skip", type=int, default=0)
    parser.add_argument("--limit", type=int, default=settings.sync_batch_limit)
    parser.add_argument("--max-batches", type=int, default=0, help="Stop after N batches (0 = until done)")
    args = parser.parse_args(argv)

    if args.limit <= 0:
        parser.error("--limit must be positive")
    if args.limit > settings.sync_batch_limit_max:
        parser.error(f"--limit must not exceed {settings.sync_batch_limit_max}")
    if args.start_skip < 0:
        parser.error("--start-skip must not be negative")

    try:
        summary = run(
            TARGETS[args.target],
            target=args.target,
            start_skip=args.start_skip,
            limit=args.limit,
            max_batches=args.max_batches,
        )
    except CostSyncError as exc:
        _json_log("error", "costing.sync_driver.failed", target=args.target, skip=exc.skip, error=str(exc))
        print(f"sync failed; resume with --start-skip {exc.skip}", file=sys.stderr)
        return 1
    finally:
        close_pools()

    print(json.dumps(summary))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
