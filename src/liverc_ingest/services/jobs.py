# src/liverc_ingest/services/jobs.py
"""
In-process import job runner.

A single scheduler polls the job repository at a fixed interval, claims at
most one queued job per tick and imports its items one after another. Any
item failure fails the whole job; the failing item keeps its own detail.
"""

import hashlib
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..config import JOB_POLL_INTERVAL_MS, JOB_PROCESSING_DELAY_MS
from ..domain import (
    CreateImportJobInput,
    ImportJob,
    ImportJobItemInput,
    ImportJobItemUpdate,
)
from ..ports import ImportJobRepository, NoopTelemetry, Telemetry

logger = logging.getLogger(__name__)

JOB_FAILED_MESSAGE = "LiveRC summary import failed."
ITEM_FAILED_MESSAGE = "Failed to import LiveRC event summary."


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timer(Protocol):
    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle: ...


class ThreadingTimer:
    """Runs each callback once on a daemon ``threading.Timer`` thread."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(delay_seconds, callback)
        timer.daemon = True
        timer.start()
        return timer


class SummaryImporter(Protocol):
    def ingest_event_summary(self, event_ref: str) -> dict[str, int]: ...


@dataclass
class EnqueueItem:
    event_ref: str
    counts: dict[str, Any] | None = None


@dataclass
class JobRunnerStats:
    """Thread-safe counters for the lifetime of one runner."""

    jobs_succeeded: int = field(default=0)
    jobs_failed: int = field(default=0)
    items_succeeded: int = field(default=0)
    items_failed: int = field(default=0)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment(self, field_name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, field_name, getattr(self, field_name) + amount)

    def reset(self) -> None:
        with self._lock:
            self.jobs_succeeded = 0
            self.jobs_failed = 0
            self.items_succeeded = 0
            self.items_failed = 0

    def to_dict(self) -> dict[str, int]:
        with self._lock:
            return {
                "jobs_succeeded": self.jobs_succeeded,
                "jobs_failed": self.jobs_failed,
                "items_succeeded": self.items_succeeded,
                "items_failed": self.items_failed,
            }


def compute_plan_hash(plan_id: str) -> str:
    return hashlib.sha256(plan_id.encode("utf-8")).hexdigest()


class JobQueue:
    """
    Polling job runner.

    Features:
    - ``start()``/``stop()`` are idempotent; ``stop()`` only prevents the next tick
    - At most one tick in flight; overlapping ticks are skipped
    - Items processed strictly sequentially with progress after each one
    """

    def __init__(
        self,
        repository: ImportJobRepository,
        summary_importer: SummaryImporter,
        poll_interval_ms: int = JOB_POLL_INTERVAL_MS,
        processing_delay_ms: int = JOB_PROCESSING_DELAY_MS,
        timer: Timer | None = None,
        sleep: Callable[[float], None] = time.sleep,
        telemetry: Telemetry | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        """
        Args:
            repository: Job storage
            summary_importer: Imports one event per job item
            poll_interval_ms: Delay between ticks
            processing_delay_ms: Pause before each item
            timer: Tick scheduler (ThreadingTimer by default)
            sleep: Sleep used for the processing delay
            telemetry: Receives one event-ingestion record per item
            log: Logger override
        """
        self.repository = repository
        self.summary_importer = summary_importer
        self.poll_interval = poll_interval_ms / 1000
        self.processing_delay = processing_delay_ms / 1000
        self.timer = timer or ThreadingTimer()
        self.telemetry = telemetry or NoopTelemetry()
        self.logger = log or logger
        self.stats = JobRunnerStats()
        self._sleep = sleep
        self._lock = threading.Lock()
        self._handle: TimerHandle | None = None
        self._running = False
        self._tick_in_progress = False

    @property
    def running(self) -> bool:
        return self._running

    def enqueue_job(self, plan_id: str, items: Sequence[EnqueueItem]) -> str:
        """
        Create a SUMMARY job for a plan. Items with a blank event ref are dropped.

        Returns:
            The new job id
        """
        job_items = [
            ImportJobItemInput(target_type="EVENT", target_ref=item.event_ref.strip(), counts=item.counts)
            for item in items
            if item.event_ref.strip()
        ]
        job_id = self.repository.create_job(
            CreateImportJobInput(
                plan_id=plan_id,
                plan_hash=compute_plan_hash(plan_id.strip()),
                mode="SUMMARY",
                items=job_items,
            )
        )
        self.logger.info(
            f"📥 Enqueued job {job_id} for plan {plan_id} ({len(job_items)} item(s))",
            extra={"event": "liverc.jobRunner.job_enqueued", "job_id": job_id},
        )
        return job_id

    def get_job(self, job_id: str) -> ImportJob | None:
        return self.repository.get_job(job_id)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        self._schedule_next_tick()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    def _schedule_next_tick(self) -> None:
        with self._lock:
            if not self._running:
                return
            if self._handle is not None:
                self._handle.cancel()
            self._handle = self.timer.schedule(self.poll_interval, self.run_tick)

    def run_tick(self) -> None:
        """Claim and process at most one queued job, then schedule the next tick."""
        with self._lock:
            if not self._running:
                return
            if self._tick_in_progress:
                skip = True
            else:
                skip = False
                self._tick_in_progress = True
        if skip:
            self._schedule_next_tick()
            return

        try:
            job = self.repository.take_next_queued_job()
            if job is not None:
                self._process_job(job)
        except Exception as e:
            self.logger.error(
                f"❌ LiveRC job runner tick failed: {e}",
                extra={"event": "liverc.jobRunner.tick_failed", "outcome": "failure"},
                exc_info=True,
            )
        finally:
            with self._lock:
                self._tick_in_progress = False
            self._schedule_next_tick()

    def _process_job(self, job: ImportJob) -> None:
        self.logger.info(f"🚀 Processing job {job.job_id} ({len(job.items)} item(s))")
        try:
            self._process_job_items(job)
            self.repository.mark_job_succeeded(job.job_id)
            self.stats.increment("jobs_succeeded")
            self.logger.info(f"✅ Job {job.job_id} succeeded")
        except Exception as e:
            self.stats.increment("jobs_failed")
            self.logger.error(
                f"❌ Job {job.job_id} failed: {e}",
                extra={"event": "liverc.jobRunner.job_failed", "job_id": job.job_id},
            )
            try:
                self.repository.mark_job_failed(job.job_id, JOB_FAILED_MESSAGE)
            except Exception as mark_error:
                self.logger.error(
                    f"❌ Could not mark job {job.job_id} as failed: {mark_error}",
                    extra={"event": "liverc.jobRunner.job_mark_failed", "job_id": job.job_id},
                )

    def _process_job_items(self, job: ImportJob) -> None:
        total = len(job.items)
        if total == 0:
            self.repository.update_job_progress(job.job_id, 100)
            return

        processed = 0
        for item in job.items:
            if self.processing_delay > 0:
                self._sleep(self.processing_delay)

            started = time.perf_counter()
            self.logger.info(
                f"🏁 Importing {item.target_ref}",
                extra={"event": "liverc.jobRunner.item_started", "job_id": job.job_id, "item_id": item.id},
            )
            try:
                counts = self.summary_importer.ingest_event_summary(item.target_ref)
            except Exception as e:
                self.stats.increment("items_failed")
                self._safe_update_job_item(
                    item.id, ImportJobItemUpdate(state="FAILED", message=ITEM_FAILED_MESSAGE)
                )
                self.logger.warning(
                    f"⚠️ Summary import failed for {item.target_ref}: {e}",
                    extra={"event": "liverc.jobRunner.item_failed", "job_id": job.job_id, "item_id": item.id},
                )
                self.telemetry.record_event_ingestion(
                    "failure", (time.perf_counter() - started) * 1000
                )
                raise

            self._safe_update_job_item(
                item.id, ImportJobItemUpdate(state="SUCCEEDED", message=None, counts=counts)
            )
            processed += 1
            self.repository.update_job_progress(job.job_id, round(processed / total * 100))
            self.stats.increment("items_succeeded")
            self.telemetry.record_event_ingestion(
                "success", (time.perf_counter() - started) * 1000, counts
            )
            self.logger.info(
                f"✅ Imported {item.target_ref}: {counts}",
                extra={"event": "liverc.jobRunner.item_succeeded", "job_id": job.job_id, "item_id": item.id},
            )

    def _safe_update_job_item(self, item_id: str, update: ImportJobItemUpdate) -> None:
        try:
            self.repository.update_job_item(item_id, update)
        except Exception as e:
            self.logger.error(
                f"❌ Could not update job item {item_id}: {e}",
                extra={"event": "liverc.jobRunner.item_update_failed", "item_id": item_id},
            )
