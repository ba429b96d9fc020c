"""
Simulated render backend for local previews and tests.

No external call: every submit waits a fixed or random delay and resolves
immediately with a placeholder result, so the orchestrator sees a
synchronous completion model.
"""

import asyncio
import logging
import random
from typing import Iterable, Optional
from uuid import uuid4

from ..models import JobSpec, JobStatus, SubmitResult
from .base import RenderBackendAdapter

logger = logging.getLogger(__name__)

PLACEHOLDER_VIDEO_BASE = "https://storage.googleapis.com/renderbatch-previews"
PLACEHOLDER_THUMB_BASE = "https://picsum.photos/seed"


class SimulatedBackend(RenderBackendAdapter):
    name = "simulated"
    is_async = False

    def __init__(
        self,
        min_delay: float = 0.0,
        max_delay: Optional[float] = None,
        fail_indices: Iterable[int] = (),
        failure_rate: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            min_delay:    Seconds to wait per job.
            max_delay:    When set, the delay is drawn uniformly from [min_delay, max_delay].
            fail_indices: Job indices that always fail (partial-failure previews).
            failure_rate: Probability of a random failure for every other job.
        """
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.fail_indices = set(fail_indices)
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()

    def _delay(self) -> float:
        if self.max_delay is None:
            return self.min_delay
        return self._rng.uniform(self.min_delay, self.max_delay)

    async def submit(self, spec: JobSpec) -> SubmitResult:
        delay = self._delay()
        if delay > 0:
            await asyncio.sleep(delay)

        render_id = f"sim_{uuid4().hex[:12]}"

        if spec.index in self.fail_indices or (
            self.failure_rate and self._rng.random() < self.failure_rate
        ):
            logger.info(f"Simulated render failed for job #{spec.index}")
            return SubmitResult(
                immediate_status=JobStatus.FAILED,
                error=f"Simulated render failure for variation #{spec.index + 1}",
            )

        return SubmitResult(
            immediate_status=JobStatus.COMPLETED,
            result_url=f"{PLACEHOLDER_VIDEO_BASE}/{render_id}.mp4",
            thumbnail_url=f"{PLACEHOLDER_THUMB_BASE}/{render_id}/270/480",
        )
