"""
Background worker: notification jobs and the payment hold sweep.

Usage:
    python -m dentacare.worker

The worker polls for pending jobs and processes them, and runs the hold
sweep every SWEEP_INTERVAL_SECONDS. For production, run this as a separate
process (e.g., systemd service, Docker container).
"""

import asyncio
import logging
import time

from dentacare.core.clock import Clock, SystemClock
from dentacare.core.config import settings
from dentacare.core.structured_logging import build_log_context
from dentacare.db.session import SessionLocal
from dentacare.jobs.registry import resolve_job_handler
from dentacare.services import job_service, sweep_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[SqlalchemyIntegration()],
        send_default_pii=False,
    )

POLL_INTERVAL_SECONDS = settings.WORKER_POLL_INTERVAL
BATCH_SIZE = settings.WORKER_BATCH_SIZE
SWEEP_INTERVAL_SECONDS = settings.SWEEP_INTERVAL_SECONDS


async def process_job(db, job) -> None:
    """Process a single job based on its type."""
    logger.info(
        "Processing job %s (type=%s, attempt=%s)", job.id, job.job_type, job.attempts
    )
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


async def run_pending_jobs(db, now=None) -> int:
    """Claim and run one batch. Returns the number of jobs attempted."""
    jobs = job_service.claim_pending_jobs(db, now=now, limit=BATCH_SIZE)
    if jobs:
        logger.info("Found %s pending jobs", len(jobs))

    for job in jobs:
        try:
            await process_job(db, job)
            job_service.mark_job_completed(db, job)
            logger.info("Job %s completed successfully", job.id)
        except Exception as e:
            db.rollback()
            job_service.mark_job_failed(db, job, f"{type(e).__name__}: {e}")
            logger.error("Job %s failed: %s", job.id, type(e).__name__)
    return len(jobs)


def run_sweep_once(db, clock: Clock) -> sweep_service.SweepResult:
    return sweep_service.run_sweep(db, now=clock.now(), config=settings)


async def worker_loop(clock: Clock | None = None) -> None:
    """Main worker loop - polls for and processes pending jobs."""
    clock = clock or SystemClock()
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s, sweep interval: %ss)",
        POLL_INTERVAL_SECONDS,
        BATCH_SIZE,
        SWEEP_INTERVAL_SECONDS,
    )

    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY not set - emails will be logged but not sent")

    last_sweep = 0.0
    while True:
        with SessionLocal() as db:
            try:
                await run_pending_jobs(db)
            except Exception as e:
                db.rollback()
                logger.error("Error in worker loop: %s", type(e).__name__, exc_info=True)

            if time.monotonic() - last_sweep >= SWEEP_INTERVAL_SECONDS:
                last_sweep = time.monotonic()
                try:
                    run_sweep_once(db, clock)
                except Exception as e:
                    logger.error("Sweep failed: %s", type(e).__name__, exc_info=True)

        await asyncio.sleep(POLL_INTERVAL_SECONDS)


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(route="worker", method="background"),
        )
        raise


if __name__ == "__main__":
    main()
