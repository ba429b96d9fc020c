"""
PollingScheduler is the only thing that drives async batches forward.

Each tick looks at every batch the orchestrator owns and launches
`orchestrator.refresh()` for the ones that are due. A batch never has two
refreshes in flight; a slow refresh simply makes it skip ticks.

Interval per batch is the slowest poll_interval among the backends its
in-flight jobs use. A refresh that hit transient errors doubles the interval
(capped at max_backoff); the next clean refresh resets it.
"""

import asyncio
import logging
import time
from contextlib import suppress
from typing import Callable, Optional

from . import config, metrics
from .errors import BatchNotFoundError
from .models import IN_FLIGHT_STATUSES, BatchRecord
from .orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


class PollingScheduler:
    def __init__(
        self,
        orchestrator: JobOrchestrator,
        clock: Callable[[], float] = time.monotonic,
        tick_seconds: float = config.TICK_SECONDS,
        max_backoff: float = config.MAX_POLL_BACKOFF,
    ):
        self.orchestrator = orchestrator
        self.clock = clock
        self.tick_seconds = tick_seconds
        self.max_backoff = max_backoff

        self._last_run: dict[str, float] = {}
        self._interval_used: dict[str, float] = {}
        self._backoff: dict[str, float] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    def interval_for(self, batch: BatchRecord) -> Optional[float]:
        """Seconds between refreshes, backoff included. None = nothing to do."""
        base = self.orchestrator.polling_interval(batch)
        if base is None:
            return None
        return max(base, self._backoff.get(batch.id, 0.0))

    def is_refreshing(self, batch_id: str) -> bool:
        return batch_id in self._in_flight

    def _forget(self, batch_id: str):
        self._last_run.pop(batch_id, None)
        self._interval_used.pop(batch_id, None)
        self._backoff.pop(batch_id, None)

    # ── Tick ─────────────────────────────────────────────────────────────

    def tick(self) -> list[str]:
        """Launch refreshes for every due batch. Returns the triggered batch ids."""
        now = self.clock()
        triggered = []
        active = 0
        in_flight_jobs = 0

        for batch in self.orchestrator.tracked_batches():
            interval = self.interval_for(batch)
            if interval is None:
                if batch.id not in self._in_flight:
                    self._forget(batch.id)
                continue

            active += 1
            in_flight_jobs += sum(1 for job in batch.jobs if job.status in IN_FLIGHT_STATUSES)

            if batch.id in self._in_flight:
                continue
            last = self._last_run.get(batch.id)
            if last is not None and now - last < interval:
                continue

            self._last_run[batch.id] = now
            self._interval_used[batch.id] = interval
            self._in_flight[batch.id] = asyncio.create_task(self._refresh(batch.id))
            triggered.append(batch.id)

        metrics.set_gauge("active_batches", active)
        metrics.set_gauge("in_flight_jobs", in_flight_jobs)
        if triggered:
            logger.debug(f"Tick: refreshing {len(triggered)} batch(es)")
        return triggered

    async def _refresh(self, batch_id: str):
        try:
            report = await self.orchestrator.refresh(batch_id)
        except BatchNotFoundError:
            self._forget(batch_id)
            return
        except Exception as e:
            logger.error(f"[{batch_id}] Refresh failed: {e}", exc_info=True)
            metrics.inc_counter("errors.refresh")
            return
        finally:
            self._in_flight.pop(batch_id, None)

        if report.transient_errors:
            previous = max(self._interval_used.get(batch_id, 0.0), self.tick_seconds)
            backoff = min(previous * 2, self.max_backoff)
            self._backoff[batch_id] = backoff
            logger.info(
                f"[{batch_id}] {report.transient_errors} transient error(s), backing off to {backoff:.1f}s"
            )
        else:
            self._backoff.pop(batch_id, None)

    async def drain(self):
        """Wait until no refresh is in flight."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    # ── Background loop ──────────────────────────────────────────────────

    async def run(self):
        logger.info(f"Polling scheduler started (tick={self.tick_seconds}s)")
        while not self._stopping:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            await asyncio.sleep(self.tick_seconds)

    def start(self):
        if self._task and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self.run())

    async def stop(self):
        self._stopping = True
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.drain()
        logger.info("Polling scheduler stopped")
