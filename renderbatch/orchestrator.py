"""
JobOrchestrator owns batches and drives every job through its lifecycle.

  pending    → submitted | completed | failed | cancelled
  submitted  → processing | failed | cancelled
  processing → completed | failed | cancelled
  failed     → pending   (explicit retry only)

Usage:
    orchestrator = JobOrchestrator(registry, repository)
    batch = orchestrator.create_batch("Spring promo", owner_id, request)
    await orchestrator.start(batch.id)
    await orchestrator.refresh(batch.id)   # normally called by PollingScheduler

One orchestrator instance is the sole owner of its batches. Every network
call for a job (submit, poll, cancel) runs under that job's asyncio.Lock, so
at most one is in flight per job. Per-job errors are recorded on the job and
never abort the batch.
"""

import asyncio
import logging
import random
import time
from typing import Callable, Iterable, Optional

from . import config, metrics
from .backends.base import RenderBackendAdapter
from .backends.factory import BackendRegistry
from .errors import (
    BatchNotFoundError,
    InvalidTransitionError,
    JobNotFoundError,
    ResultIntegrityError,
    RetryLimitExceededError,
    RetryRejectedError,
    TerminalBackendError,
    TransientBackendError,
)
from .models import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    BatchRecord,
    BatchStatus,
    BatchSummary,
    JobRecord,
    JobStatus,
    RefreshReport,
    VariationRequest,
    _now_iso,
    derive_batch_status,
    is_allowed_transition,
)
from .pricing import cost_for_dimensions
from .progress import summarize
from .repository import BatchRepository, InMemoryBatchRepository
from .variation import expand

logger = logging.getLogger(__name__)

# Outcomes of a single submit / poll, folded into RefreshReport
TRANSITIONED = "transitioned"
UNCHANGED = "unchanged"
TRANSIENT = "transient"
SKIPPED = "skipped"

TransitionListener = Callable[[str, JobRecord, JobStatus, JobStatus], None]


class JobOrchestrator:
    def __init__(
        self,
        registry: BackendRegistry,
        repository: Optional[BatchRepository] = None,
        max_attempts: int = config.MAX_JOB_ATTEMPTS,
        max_transient_errors: int = config.MAX_TRANSIENT_ERRORS,
        max_concurrent_calls: int = config.MAX_CONCURRENT_SUBMITS,
    ):
        self.registry = registry
        self.repository = repository or InMemoryBatchRepository()
        self.max_attempts = max_attempts
        self.max_transient_errors = max_transient_errors

        self._batches: dict[str, BatchRecord] = {}
        self._job_batch: dict[str, str] = {}  # job id → batch id
        self._locks: dict[str, asyncio.Lock] = {}
        self._transient_errors: dict[str, int] = {}
        self._ignored_handles: dict[str, str] = {}  # cancelled backend id → job id; late polls are dropped
        self._background: set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(max_concurrent_calls)
        self._listeners: list[TransitionListener] = []

    # ── Bookkeeping ──────────────────────────────────────────────────────

    def add_listener(self, listener: TransitionListener):
        """Called as listener(batch_id, job, previous, target) after every transition."""
        self._listeners.append(listener)

    def _track(self, batch: BatchRecord):
        self._batches[batch.id] = batch
        for job in batch.jobs:
            self._job_batch[job.id] = batch.id

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    def _save(self, batch: BatchRecord):
        self.repository.save(batch)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self):
        """Wait for fire-and-forget work (backend cancels) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _transition(self, batch: BatchRecord, job: JobRecord, target: JobStatus, **fields):
        previous = job.status
        if not is_allowed_transition(previous, target):
            raise InvalidTransitionError(job.id, previous.value, target.value)

        job.status = target
        for name, value in fields.items():
            setattr(job, name, value)

        logger.info(f"[{batch.id}] job #{job.spec.index} {previous.value} → {target.value}")
        for listener in self._listeners:
            listener(batch.id, job, previous, target)

    # ── Lookup ───────────────────────────────────────────────────────────

    def get_batch(self, batch_id: str) -> BatchRecord:
        batch = self._batches.get(batch_id)
        if batch is None:
            return self.load_batch(batch_id)
        return batch

    def load_batch(self, batch_id: str) -> BatchRecord:
        """
        Rehydrate a batch from the repository and take ownership of it.
        In-flight jobs resume polling on the next scheduler tick.
        """
        batch = self.repository.load(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        self._track(batch)
        logger.info(f"[{batch.id}] Loaded batch ({len(batch.jobs)} jobs, status={batch.status.value})")
        return batch

    def list_batches(self, owner_id: str) -> list[BatchRecord]:
        batches = self.repository.list(owner_id)
        # Prefer the live instance for batches this orchestrator owns
        return [self._batches.get(batch.id, batch) for batch in batches]

    def tracked_batches(self) -> list[BatchRecord]:
        return list(self._batches.values())

    def _find_job(self, job_id: str) -> tuple[BatchRecord, JobRecord]:
        batch_id = self._job_batch.get(job_id)
        if batch_id is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        batch = self.get_batch(batch_id)
        job = batch.find_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return batch, job

    def batch_status(self, batch_id: str) -> BatchStatus:
        return derive_batch_status(self.get_batch(batch_id))

    def summarize(self, batch_id: str) -> BatchSummary:
        return summarize(self.get_batch(batch_id))

    def _backend(self, job: JobRecord) -> RenderBackendAdapter:
        return self.registry.get(job.backend)

    # ── Create ───────────────────────────────────────────────────────────

    def create_batch(
        self,
        name: str,
        owner_id: str,
        request: VariationRequest,
        rng: Optional[random.Random] = None,
    ) -> BatchRecord:
        """
        Expand the request and create one Pending JobRecord per spec.

        Raises:
            ValidationError: the request is malformed; nothing is created.
        """
        specs = expand(request, rng)
        jobs = [
            JobRecord(
                spec=spec,
                backend=self.registry.resolve(spec),
                estimated_cost=cost_for_dimensions(spec.dimensions),
            )
            for spec in specs
        ]
        batch = BatchRecord(owner_id=owner_id, name=name, settings=request, jobs=jobs)
        if not batch.name:
            batch.name = f"Batch {batch.created_at[:16]}"

        self._track(batch)
        self._save(batch)
        logger.info(f"[{batch.id}] Created batch '{batch.name}' with {len(jobs)} jobs for {owner_id}")
        return batch

    # ── Start / submit ───────────────────────────────────────────────────

    async def start(self, batch_id: str) -> BatchRecord:
        """Submit every Pending job. Calling it again only picks up jobs still Pending."""
        batch = self.get_batch(batch_id)
        if batch.cancelled:
            raise InvalidTransitionError(batch.id, batch.status.value, BatchStatus.RUNNING.value)
        if batch.paused:
            logger.info(f"[{batch.id}] start ignored: batch is paused")
            return batch

        if batch.started_at is None:
            batch.started_at = _now_iso()

        pending = [job for job in batch.jobs if job.status == JobStatus.PENDING]
        logger.info(f"[{batch.id}] Starting: submitting {len(pending)} job(s)")
        await self._submit_all(batch, pending)
        self._save(batch)
        return batch

    async def _submit_all(self, batch: BatchRecord, jobs: Iterable[JobRecord]) -> list[str]:
        return list(await asyncio.gather(*(self._submit_job(batch, job) for job in jobs)))

    async def _submit_job(self, batch: BatchRecord, job: JobRecord) -> str:
        async with self._lock_for(job.id):
            # Re-check under the lock: another call may have submitted or cancelled it
            if job.status != JobStatus.PENDING or batch.paused or batch.cancelled:
                return SKIPPED

            backend = self._backend(job)
            async with self._slots:
                started = time.monotonic()
                try:
                    result = await backend.submit(job.spec)
                except TransientBackendError as e:
                    if job.status != JobStatus.PENDING:
                        return UNCHANGED
                    return self._note_transient(batch, job, e)
                except TerminalBackendError as e:
                    if job.status != JobStatus.PENDING:
                        return UNCHANGED
                    self._fail(batch, job, str(e), kind="terminal")
                    return TRANSITIONED
                except Exception as e:
                    if job.status != JobStatus.PENDING:
                        return UNCHANGED
                    logger.error(f"[{batch.id}] Unexpected submit error for job #{job.spec.index}: {e}", exc_info=True)
                    self._fail(batch, job, f"Submit failed: {e}", kind="unexpected")
                    return TRANSITIONED
                finally:
                    metrics.record_latency(f"{backend.name}.submit", (time.monotonic() - started) * 1000)

            metrics.inc_counter(f"submits.{backend.name}")

            if job.status != JobStatus.PENDING:
                # Cancelled while the submit was in flight
                if result.backend_job_id:
                    self._ignored_handles[result.backend_job_id] = job.id
                    self._spawn(self._cancel_remote(batch, job, result.backend_job_id))
                return UNCHANGED

            self._transient_errors.pop(job.id, None)
            now = _now_iso()

            if result.immediate_status == JobStatus.COMPLETED:
                self._complete(batch, job, result.result_url, result.thumbnail_url, submitted_at=now)
            elif result.immediate_status == JobStatus.FAILED:
                self._fail(batch, job, result.error or f"{backend.name} rejected the job", kind="terminal")
            elif backend.is_async and result.backend_job_id:
                self._transition(
                    batch, job, JobStatus.SUBMITTED,
                    backend_job_id=result.backend_job_id,
                    submitted_at=now,
                )
            else:
                self._fail(batch, job, f"{backend.name} returned neither a result nor a job handle", kind="terminal")
            return TRANSITIONED

    # ── Refresh / poll ───────────────────────────────────────────────────

    async def refresh(self, batch_id: str) -> RefreshReport:
        """
        One polling pass over a batch: resubmit Pending jobs left behind by
        transient submit errors, then poll every in-flight async job.
        """
        batch = self.get_batch(batch_id)
        report = RefreshReport(batch_id=batch.id)

        if batch.paused or batch.cancelled or batch.started_at is None:
            report.skipped = True
            return report

        pending = [job for job in batch.jobs if job.status == JobStatus.PENDING]
        in_flight = [
            job for job in batch.jobs
            if job.status in IN_FLIGHT_STATUSES and self._backend(job).is_async
        ]

        submit_outcomes = await self._submit_all(batch, pending)
        poll_outcomes = await asyncio.gather(*(self._poll_job(batch, job) for job in in_flight))

        report.submitted = sum(1 for outcome in submit_outcomes if outcome != SKIPPED)
        report.polled = sum(1 for outcome in poll_outcomes if outcome != SKIPPED)
        outcomes = submit_outcomes + list(poll_outcomes)
        report.transitioned = outcomes.count(TRANSITIONED)
        report.transient_errors = outcomes.count(TRANSIENT)

        if report.submitted or report.polled:
            self._save(batch)
        return report

    async def _poll_job(self, batch: BatchRecord, job: JobRecord) -> str:
        lock = self._lock_for(job.id)
        if lock.locked():
            # Another operation is already in flight for this job
            return SKIPPED

        async with lock:
            if job.status not in IN_FLIGHT_STATUSES:
                return SKIPPED

            handle = job.backend_job_id
            backend = self._backend(job)
            async with self._slots:
                started = time.monotonic()
                try:
                    result = await backend.poll_status(handle)
                except TransientBackendError as e:
                    if job.status not in IN_FLIGHT_STATUSES:
                        return UNCHANGED
                    return self._note_transient(batch, job, e)
                except TerminalBackendError as e:
                    if job.status not in IN_FLIGHT_STATUSES:
                        return UNCHANGED
                    self._fail(batch, job, str(e), kind="terminal")
                    return TRANSITIONED
                except Exception as e:
                    if job.status not in IN_FLIGHT_STATUSES:
                        return UNCHANGED
                    logger.error(f"[{batch.id}] Unexpected poll error for job #{job.spec.index}: {e}", exc_info=True)
                    self._fail(batch, job, f"Status check failed: {e}", kind="unexpected")
                    return TRANSITIONED
                finally:
                    metrics.record_latency(f"{backend.name}.poll", (time.monotonic() - started) * 1000)

            metrics.inc_counter(f"polls.{backend.name}")

            if job.status not in IN_FLIGHT_STATUSES or handle in self._ignored_handles:
                logger.info(f"[{batch.id}] Ignoring late poll result for job #{job.spec.index} ({handle})")
                return UNCHANGED

            self._transient_errors.pop(job.id, None)

            if result.status == JobStatus.FAILED:
                self._fail(batch, job, result.error or "Backend reported failure", kind="terminal")
                return TRANSITIONED

            changed = False
            if job.status == JobStatus.SUBMITTED:
                # First poll reply confirms the backend accepted the job
                self._transition(batch, job, JobStatus.PROCESSING)
                changed = True

            if result.status == JobStatus.COMPLETED:
                self._complete(batch, job, result.result_url, result.thumbnail_url)
                changed = True

            return TRANSITIONED if changed else UNCHANGED

    # ── Outcomes ─────────────────────────────────────────────────────────

    def _complete(
        self,
        batch: BatchRecord,
        job: JobRecord,
        result_url: Optional[str],
        thumbnail_url: Optional[str],
        submitted_at: Optional[str] = None,
    ):
        now = _now_iso()
        if not result_url:
            error = ResultIntegrityError(
                f"Backend reported job #{job.spec.index} as done but returned no video URL"
            )
            logger.error(f"[{batch.id}] Result integrity failure: {error}")
            metrics.inc_counter("errors.integrity")
            metrics.record_error("integrity", batch.id, job.id, str(error))
            self._transition(batch, job, JobStatus.FAILED, error_message=str(error), completed_at=now)
            return

        fields = {
            "result_url": result_url,
            "thumbnail_url": thumbnail_url,
            "error_message": None,
            "completed_at": now,
        }
        if submitted_at:
            fields["submitted_at"] = submitted_at
        self._transition(batch, job, JobStatus.COMPLETED, **fields)
        metrics.inc_counter("jobs.completed")

    def _fail(self, batch: BatchRecord, job: JobRecord, message: str, kind: str):
        self._transition(batch, job, JobStatus.FAILED, error_message=message, completed_at=_now_iso())
        self._transient_errors.pop(job.id, None)
        logger.warning(f"[{batch.id}] job #{job.spec.index} failed ({kind}): {message}")
        metrics.inc_counter(f"errors.{kind}")
        metrics.inc_counter("jobs.failed")
        metrics.record_error(kind, batch.id, job.id, message)

    def _note_transient(self, batch: BatchRecord, job: JobRecord, error: Exception) -> str:
        count = self._transient_errors.get(job.id, 0) + 1
        metrics.inc_counter("errors.transient")

        if count >= self.max_transient_errors:
            self._fail(batch, job, f"Gave up after {count} transient errors: {error}", kind="transient")
            return TRANSITIONED

        self._transient_errors[job.id] = count
        logger.warning(
            f"[{batch.id}] job #{job.spec.index} transient error {count}/{self.max_transient_errors}: {error}"
        )
        return TRANSIENT

    # ── Pause / resume ───────────────────────────────────────────────────

    def pause(self, batch_id: str) -> BatchRecord:
        """
        Exclude the batch from polling. In-flight jobs stay as they are on
        the backend; nothing is cancelled. Pausing twice is a no-op.
        """
        batch = self.get_batch(batch_id)
        if batch.paused or batch.cancelled:
            return batch
        batch.paused = True
        self._save(batch)
        logger.info(f"[{batch.id}] Paused")
        return batch

    async def resume(self, batch_id: str) -> BatchRecord:
        """
        Put the batch back in the polling cycle. Jobs still Pending (e.g.
        retried while paused) are submitted; in-flight jobs are not resubmitted.
        Resuming a batch that is not paused is a no-op.
        """
        batch = self.get_batch(batch_id)
        if not batch.paused:
            return batch
        batch.paused = False
        logger.info(f"[{batch.id}] Resumed")

        if batch.started_at is not None:
            pending = [job for job in batch.jobs if job.status == JobStatus.PENDING]
            await self._submit_all(batch, pending)
        self._save(batch)
        return batch

    # ── Cancel ───────────────────────────────────────────────────────────

    async def cancel(self, batch_id: str) -> BatchRecord:
        """
        Mark every non-terminal job Cancelled right away and fire backend
        cancels in the background without waiting for acknowledgement.
        """
        batch = self.get_batch(batch_id)
        if batch.cancelled:
            return batch

        batch.cancelled = True
        now = _now_iso()
        for job in batch.jobs:
            if job.status in TERMINAL_STATUSES:
                continue
            handle = job.backend_job_id
            self._transition(batch, job, JobStatus.CANCELLED, completed_at=now)
            self._transient_errors.pop(job.id, None)
            if handle:
                self._ignored_handles[handle] = job.id
                self._spawn(self._cancel_remote(batch, job, handle))

        self._save(batch)
        logger.info(f"[{batch.id}] Cancelled → {batch.status.value}")
        return batch

    async def _cancel_remote(self, batch: BatchRecord, job: JobRecord, handle: str):
        backend = self._backend(job)
        if not backend.is_async:
            return
        async with self._lock_for(job.id):
            try:
                await backend.cancel(handle)
                metrics.inc_counter(f"cancels.{backend.name}")
            except Exception as e:
                # Best-effort: the local record is already Cancelled
                logger.warning(f"[{batch.id}] Backend cancel failed for job #{job.spec.index} ({handle}): {e}")

    # ── Retry ────────────────────────────────────────────────────────────

    def _reset_for_retry(self, batch: BatchRecord, job: JobRecord):
        if batch.cancelled:
            raise RetryRejectedError(f"Batch {batch.id} was cancelled; its jobs cannot be retried")
        if job.status != JobStatus.FAILED:
            raise RetryRejectedError(f"Job {job.id} is {job.status.value}; only failed jobs can be retried")
        if job.attempts >= self.max_attempts:
            raise RetryLimitExceededError(
                f"Job {job.id} already retried {job.attempts} time(s); limit is {self.max_attempts}"
            )

        self._transition(
            batch, job, JobStatus.PENDING,
            attempts=job.attempts + 1,
            error_message=None,
            backend_job_id="",
            result_url=None,
            thumbnail_url=None,
            submitted_at=None,
            completed_at=None,
        )
        self._transient_errors.pop(job.id, None)
        metrics.inc_counter("jobs.retried")

    async def retry(self, job_id: str) -> JobRecord:
        """
        Re-queue one Failed job and submit it again (unless the batch is paused).

        Raises:
            RetryRejectedError:      the job is not Failed, or its batch was cancelled.
            RetryLimitExceededError: the job already used its retry budget.
        """
        batch, job = self._find_job(job_id)
        self._reset_for_retry(batch, job)
        self._save(batch)

        if not batch.paused:
            await self._submit_all(batch, [job])
            self._save(batch)
        return job

    async def retry_failed(self, batch_id: str) -> list[str]:
        """Retry every Failed job that still has attempts left. Returns their ids."""
        batch = self.get_batch(batch_id)
        if batch.cancelled:
            raise RetryRejectedError(f"Batch {batch.id} was cancelled; its jobs cannot be retried")

        retried = []
        for job in batch.jobs:
            if job.status == JobStatus.FAILED and job.attempts < self.max_attempts:
                self._reset_for_retry(batch, job)
                retried.append(job)

        if retried:
            self._save(batch)
            if not batch.paused:
                await self._submit_all(batch, retried)
                self._save(batch)
        logger.info(f"[{batch.id}] Retried {len(retried)} failed job(s)")
        return [job.id for job in retried]

    # ── Delete ───────────────────────────────────────────────────────────

    async def delete_batch(self, batch_id: str):
        """Cancel whatever is still running, then drop the batch everywhere."""
        batch = self.get_batch(batch_id)
        if batch.status in (BatchStatus.RUNNING, BatchStatus.PAUSED):
            await self.cancel(batch_id)

        self.repository.delete(batch.id)
        self._batches.pop(batch.id, None)
        for job in batch.jobs:
            self._job_batch.pop(job.id, None)
            self._locks.pop(job.id, None)
            self._transient_errors.pop(job.id, None)
        job_ids = {job.id for job in batch.jobs}
        for handle in [h for h, job_id in self._ignored_handles.items() if job_id in job_ids]:
            del self._ignored_handles[handle]
        logger.info(f"[{batch.id}] Deleted")

    # ── Scheduling hints ─────────────────────────────────────────────────

    def polling_interval(self, batch: BatchRecord) -> Optional[float]:
        """
        Seconds between refreshes for this batch, or None when it has
        nothing to poll or resubmit. The slowest async backend in use wins,
        so no backend is polled faster than it asks for.
        """
        if batch.status != BatchStatus.RUNNING:
            return None

        intervals = []
        has_pending = False
        for job in batch.jobs:
            if job.status in IN_FLIGHT_STATUSES:
                backend = self._backend(job)
                if backend.is_async:
                    intervals.append(backend.poll_interval)
            elif job.status == JobStatus.PENDING:
                has_pending = True

        if intervals:
            return max(intervals)
        if has_pending:
            return 0.0
        return None
