from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Protocol

from labeldelay.config import RuntimeConfig
from labeldelay.error_reporting import ErrorReporter, NullErrorReporter
from labeldelay.job_store import JobStore, now_ms
from labeldelay.models import ScheduledJob
from labeldelay.observability import log_event, log_warning_event
from labeldelay.worker import RetryJob


LOGGER = logging.getLogger("labeldelay.service_runner")
_MAX_ERROR_LEN = 2000


class JobProcessor(Protocol):
    def process(self, job: ScheduledJob) -> str: ...


@dataclass(frozen=True)
class JobRunner:
    runtime: RuntimeConfig
    jobs: JobStore
    processor: JobProcessor
    error_reporter: ErrorReporter = field(default_factory=NullErrorReporter)
    clock: Callable[[], int] = now_ms

    def run(self, *, once: bool, stop_event: threading.Event | None = None) -> None:
        with ThreadPoolExecutor(
            max_workers=self.runtime.worker_count, thread_name_prefix="labeldelay-job"
        ) as pool:
            while True:
                processed = self.poll_once(pool)
                log_event(LOGGER, "job_poll_completed", processed_count=processed, once=once)
                if once:
                    return
                if stop_event is None:
                    time.sleep(self.runtime.poll_interval_seconds)
                elif stop_event.wait(self.runtime.poll_interval_seconds):
                    log_event(LOGGER, "job_runner_stopped")
                    return

    def poll_once(self, pool: ThreadPoolExecutor) -> int:
        claimed = self.jobs.claim_due_jobs(
            now_ms=self.clock(),
            limit=self.runtime.worker_count,
            lease_ms=self.runtime.job_lease_seconds * 1000,
        )
        if not claimed:
            return 0
        running: list[tuple[ScheduledJob, Future[str]]] = [
            (job, pool.submit(self.processor.process, job)) for job in claimed
        ]
        for job, fut in running:
            self._settle(job, fut)
        return len(running)

    def _settle(self, job: ScheduledJob, fut: Future[str]) -> None:
        try:
            outcome = fut.result()
        except RetryJob as exc:
            log_event(
                LOGGER,
                "job_retry_requested",
                job_key=job.key,
                action=job.payload.action,
                reason=exc.reason,
            )
            self._retry_or_drop(job, exc)
            return
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "job_failed",
                job_key=job.key,
                action=job.payload.action,
                attempts=job.attempts + 1,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.error_reporter.report(
                exc,
                owner=job.payload.owner,
                context={"job_key": job.key, **job.payload.as_dict()},
            )
            self._retry_or_drop(job, exc)
            return

        completed = self.jobs.complete_job(job.key, revision=job.revision)
        log_event(
            LOGGER,
            "job_executed",
            job_key=job.key,
            action=job.payload.action,
            outcome=outcome,
            # False means the job was rescheduled while it ran; the new revision stays.
            row_removed=completed,
        )

    def _retry_or_drop(self, job: ScheduledJob, exc: Exception) -> None:
        attempts = job.attempts + 1
        error = f"{type(exc).__name__}: {exc}"[:_MAX_ERROR_LEN]
        if attempts >= self.runtime.max_attempts:
            self.jobs.fail_job(job.key, revision=job.revision, error=error, retry_at_ms=None)
            log_warning_event(
                LOGGER,
                "job_dropped",
                job_key=job.key,
                action=job.payload.action,
                attempts=attempts,
                error_type=type(exc).__name__,
            )
            return
        retry_at_ms = self.clock() + retry_delay_ms(self.runtime, attempts=job.attempts)
        updated = self.jobs.fail_job(
            job.key, revision=job.revision, error=error, retry_at_ms=retry_at_ms
        )
        log_event(
            LOGGER,
            "job_retry_scheduled",
            job_key=job.key,
            action=job.payload.action,
            attempts=attempts,
            retry_at_ms=retry_at_ms,
            row_updated=updated,
        )


def retry_delay_ms(runtime: RuntimeConfig, *, attempts: int) -> int:
    return int(runtime.retry_backoff_seconds * 1000 * (2 ** max(attempts, 0)))
