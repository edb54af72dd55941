#!/usr/bin/env python3
"""
Run the cycle backfill from the command line.

Usage:
    python scripts/backfill_cycles.py --status       # how many snapshots need cycle info
    python scripts/backfill_cycles.py --validate     # read-only consistency check
    python scripts/backfill_cycles.py                # run the backfill in-process
    python scripts/backfill_cycles.py --batch-size 200

Requires: DATABASE_URL set (or defaults to sqlite:///local.db).
Ctrl-C stops the run cleanly after the current batch.
"""
import argparse
import json
import logging
import signal
import sys

from goalboard.database import describe_database
from goalboard.logging_config import configure_logging
from goalboard.pipeline.migration import CycleBackfill, get_migration_status, validate_migration

logger = logging.getLogger('scripts.backfill_cycles')


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def _log_progress(progress):
    eta = progress.estimated_time_remaining
    logger.info(
        "batch %d/%d: migrated=%d failed=%d rate=%.1f/s eta=%s",
        progress.current_batch, progress.total_batches,
        progress.records_migrated, progress.records_failed,
        progress.records_per_second, f'{eta:.0f}s' if eta is not None else '?',
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description='Backfill cycle metadata onto metric snapshots.')
    parser.add_argument('--status', action='store_true', help='show migration status and exit')
    parser.add_argument('--validate', action='store_true', help='validate cycle metadata and exit')
    parser.add_argument('--batch-size', type=int, default=None, help='records per batch')
    args = parser.parse_args(argv)

    configure_logging()
    logger.info("Metric store: %s", describe_database())

    if args.status:
        _print(get_migration_status())
        return 0
    if args.validate:
        result = validate_migration()
        _print(result)
        return 0 if result['is_valid'] else 1

    backfill = CycleBackfill(batch_size=args.batch_size, on_progress=_log_progress)

    def _stop(signum, frame):
        logger.warning("Interrupt received, stopping after the current batch")
        backfill.cancel()

    signal.signal(signal.SIGINT, _stop)

    report = backfill.run()
    _print(report)
    return 0 if report['state'] == 'completed' else 1


if __name__ == '__main__':
    sys.exit(main())
