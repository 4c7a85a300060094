"""
Operator job replay worker.

Finds jobs left ``pending`` (a crash between enqueue and completion) and
re-runs them. Terminal jobs are never touched. Runs once or polls until
SIGINT/SIGTERM.

    python -m payment_events.workers.job_replay --once
    python -m payment_events.workers.job_replay --interval 60 --older-than 300
"""
import asyncio
import signal
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog

from payment_events.bootstrap import PaymentCore, build_core
from payment_events.config import Settings, get_settings
from payment_events.core.exceptions import JobNotReplayable
from payment_events.database.connection import init_db
from payment_events.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def replay_stale_jobs(
    core: PaymentCore, older_than: timedelta, limit: int = 100
) -> Dict[str, int]:
    """
    Replay every job pending for longer than ``older_than``.

    Returns:
        Dict[str, int]: Count of replayed jobs by resulting status, plus ``skipped``
    """
    stale = await core.jobs.list_stale_pending(older_than=older_than, limit=limit)
    counts: Dict[str, int] = {"skipped": 0}

    for job in stale:
        try:
            replayed = await core.jobs.replay(job.id)
        except JobNotReplayable:
            # Finished by someone else since the scan.
            counts["skipped"] += 1
            continue
        counts[replayed.status] = counts.get(replayed.status, 0) + 1

    logger.info("stale_jobs_replayed", found=len(stale), **counts)
    return counts


async def start_job_replay_worker(
    settings: Optional[Settings] = None,
    once: bool = False,
    interval_seconds: float = 60.0,
    older_than_seconds: Optional[int] = None,
) -> None:
    """
    Start the job replay worker.

    Args:
        settings: Application settings (environment otherwise)
        once: Run a single scan and exit
        interval_seconds: Pause between scans
        older_than_seconds: Minimum age of a pending job before it is replayed
    """
    settings = settings or get_settings()
    setup_logging(settings, component="job_replay")
    older_than = timedelta(seconds=older_than_seconds or settings.job_replay_stale_seconds)

    logger.info(
        "job_replay_worker_starting",
        once=once,
        interval_seconds=interval_seconds,
        older_than_seconds=older_than.total_seconds(),
    )

    core = build_core(settings)
    await init_db(core.engine)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("job_replay_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await replay_stale_jobs(core, older_than)
            except Exception as e:
                logger.error("job_replay_scan_error", error=str(e))
                # Keep polling; the next scan sees the same pending rows.

            if once:
                break

            remaining = interval_seconds
            while remaining > 0 and running:
                step = min(remaining, 1.0)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        await core.aclose()
        logger.info("job_replay_worker_stopped")


def main() -> None:
    """Command-line entrypoint."""
    import argparse

    parser = argparse.ArgumentParser(description="Replay jobs left pending")
    parser.add_argument("--once", action="store_true", help="Run a single scan and exit")
    parser.add_argument(
        "--interval", type=float, default=60.0, help="Seconds between scans (default: 60)"
    )
    parser.add_argument(
        "--older-than",
        type=int,
        default=None,
        help="Replay jobs pending for at least this many seconds (default: from settings)",
    )
    args = parser.parse_args()

    asyncio.run(
        start_job_replay_worker(
            once=args.once,
            interval_seconds=args.interval,
            older_than_seconds=args.older_than,
        )
    )


if __name__ == "__main__":
    main()
