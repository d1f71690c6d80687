"""
Scan worker process.

Each worker thread loops: lease a job, process it, record the outcome. Threads share nothing
but the database; the skip-locked dequeue keeps them from stepping on each other, so the
same entry point can also be run as several processes or containers.
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
import uuid
from typing import Callable

from sqlalchemy.orm import Session

from upload_scanner.core.config import settings
from upload_scanner.core.database import SessionLocal
from upload_scanner.models.job import Job, JobType
from upload_scanner.services import job_queue
from upload_scanner.services.job_queue import LeaseLostError
from upload_scanner.services import s3 as storage
from upload_scanner.services.scan_engine import ClamAVScanner
from upload_scanner.services.scan_orchestrator import ScanOrchestrator, is_transient_error


logger = logging.getLogger(__name__)


class ScanWorker:
    def __init__(
        self,
        orchestrator: ScanOrchestrator,
        *,
        worker_id: str | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
        poll_seconds: float | None = None,
        stop_event: threading.Event | None = None,
        job_type: JobType = JobType.virus_scan,
    ) -> None:
        self.orchestrator = orchestrator
        self.worker_id = worker_id or str(uuid.uuid4())
        self.session_factory = session_factory
        self.poll_seconds = poll_seconds if poll_seconds is not None else settings.WORKER_POLL_SECONDS
        self.stop_event = stop_event or threading.Event()
        self.job_type = job_type

    def stop(self) -> None:
        self.stop_event.set()

    def run(self, *, once: bool = False) -> None:
        """
        Loop until the stop event is set. With ``once``, make a single dequeue attempt instead.
        """
        logger.info("Scan worker %s started", self.worker_id)
        while not self.stop_event.is_set():
            try:
                processed = self.run_once()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Unhandled error in worker loop (worker %s)", self.worker_id)
                processed = False

            if once:
                break
            if not processed:
                logger.debug("No job found. Sleeping %ss (worker %s)", self.poll_seconds, self.worker_id)
                # Returns early as soon as stop() is called.
                self.stop_event.wait(self.poll_seconds)
        logger.info("Scan worker %s stopping", self.worker_id)

    def run_once(self) -> bool:
        """
        Lease and process at most one job. Returns True if a job was processed (whatever its
        outcome), False if the queue had nothing for us.
        """
        db = self.session_factory()
        try:
            job = job_queue.try_dequeue(db, self.worker_id, job_type=self.job_type)
            if job is None:
                job_queue.fail_exhausted_leases(db, job_type=self.job_type)
                return False
            self._process_safely(db, job)
            return True
        finally:
            db.close()

    def _process_safely(self, db: Session, job: Job) -> None:
        job_id = job.id
        try:
            self.orchestrator.process(db, job, worker_id=self.worker_id)
        except LeaseLostError:
            logger.warning(
                "Lost lease on job %s (worker %s); leaving it to its new owner",
                job_id,
                self.worker_id,
                extra={"job_id": job_id},
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Error processing job %s", job_id, extra={"job_id": job_id})
            self._record_failure(db, job, exc)

    def _record_failure(self, db: Session, job: Job, exc: Exception) -> None:
        job_id = job.id
        reason = f"{type(exc).__name__}: {exc}"
        try:
            db.rollback()
            if (
                settings.JOB_RETRY_TRANSIENT_ERRORS
                and is_transient_error(exc)
                and job.attempts < job.max_attempts
            ):
                job_queue.requeue(db, job, reason, worker_id=self.worker_id)
            else:
                job_queue.fail(db, job, reason, worker_id=self.worker_id)
        except LeaseLostError:
            logger.warning("Job %s was taken over; not recording failure (worker %s)", job_id, self.worker_id)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Failed to save failure status for job %s", job_id)
            db.rollback()


def build_worker(worker_id: str | None = None, stop_event: threading.Event | None = None) -> ScanWorker:
    orchestrator = ScanOrchestrator(ClamAVScanner(), scan_directory=settings.SCAN_DIRECTORY)
    return ScanWorker(orchestrator, worker_id=worker_id, stop_event=stop_event)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run upload scan workers.")
    parser.add_argument(
        "--workers",
        type=int,
        default=settings.WORKER_CONCURRENCY,
        help="Number of worker threads (default: WORKER_CONCURRENCY)",
    )
    parser.add_argument(
        "--poll-seconds",
        type=float,
        default=settings.WORKER_POLL_SECONDS,
        help="Idle delay between empty dequeues (default: WORKER_POLL_SECONDS)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process at most one job per worker and exit",
    )
    parser.add_argument(
        "--skip-bucket-check",
        action="store_true",
        help="Do not create the bucket on startup",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s",
    )

    if not args.skip_bucket_check:
        storage.ensure_bucket_exists()

    stop_event = threading.Event()
    workers = [build_worker(stop_event=stop_event) for _ in range(max(1, args.workers))]
    for w in workers:
        w.poll_seconds = args.poll_seconds

    if not args.once:
        install_signal_handlers(stop_event)

    # With --once every worker still gets its own thread, so N workers race for N jobs.
    threads = [
        threading.Thread(target=w.run, kwargs={"once": args.once}, name=f"scan-worker-{i}", daemon=True)
        for i, w in enumerate(workers)
    ]
    for t in threads:
        t.start()

    # In-flight jobs run to completion; the loops exit at their next check.
    while any(t.is_alive() for t in threads):
        for t in threads:
            t.join(timeout=1.0)

    logger.info("All scan workers stopped")
    return 0


def install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle_signal(signum, frame):  # noqa: ARG001
        logger.info("Received signal %s; stopping workers", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)


if __name__ == "__main__":
    raise SystemExit(main())
