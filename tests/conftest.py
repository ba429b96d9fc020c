"""Shared fixtures and fake render backends."""

import asyncio
from collections import defaultdict
from typing import Optional

import pytest

from renderbatch import metrics
from renderbatch.backends import BackendRegistry, RenderBackendAdapter
from renderbatch.models import JobSpec, JobStatus, PollResult, SubmitResult, VariationRequest
from renderbatch.orchestrator import JobOrchestrator
from renderbatch.repository import InMemoryBatchRepository


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset()
    yield
    metrics.reset()


class FakeAsyncBackend(RenderBackendAdapter):
    """
    Scripted asynchronous backend.

    poll_script / submit_script map a job index to a list of results (or
    exceptions) consumed one per call; once empty, `default_poll` is returned.
    Setting `gate` (or `submit_gate`) makes every poll (or submit) wait on it.
    """

    name = "fake"
    is_async = True

    def __init__(self, poll_interval: float = 5.0):
        self.poll_interval = poll_interval
        self.poll_script: dict[int, list] = defaultdict(list)
        self.submit_script: dict[int, list] = defaultdict(list)
        self.default_poll = PollResult(status=JobStatus.PROCESSING)
        self.gate: Optional[asyncio.Event] = None
        self.waiting = 0
        self.submit_gate: Optional[asyncio.Event] = None
        self.submit_waiting = 0

        self.submitted: list[int] = []
        self.polls: dict[int, int] = defaultdict(int)
        self.cancelled: list[str] = []
        self._handles: dict[str, int] = {}

    async def submit(self, spec: JobSpec) -> SubmitResult:
        if self.submit_gate is not None:
            self.submit_waiting += 1
            await self.submit_gate.wait()

        script = self.submit_script[spec.index]
        if script:
            item = script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        handle = f"fake-{spec.index}-{len(self.submitted)}"
        self.submitted.append(spec.index)
        self._handles[handle] = spec.index
        return SubmitResult(backend_job_id=handle)

    async def poll_status(self, backend_job_id: str) -> PollResult:
        if self.gate is not None:
            self.waiting += 1
            await self.gate.wait()

        index = self._handles[backend_job_id]
        self.polls[index] += 1
        script = self.poll_script[index]
        if script:
            item = script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return self.default_poll

    async def cancel(self, backend_job_id: str) -> None:
        self.cancelled.append(backend_job_id)


def completed(url: str = "https://cdn.test/video.mp4") -> PollResult:
    return PollResult(status=JobStatus.COMPLETED, result_url=url, thumbnail_url="https://cdn.test/thumb.jpg")


def failed(error: str = "render failed") -> PollResult:
    return PollResult(status=JobStatus.FAILED, error=error)


def make_request(count: int, **dimensions) -> VariationRequest:
    return VariationRequest(count=count, source_ref="sneaker-01", dimensions=dimensions)


def make_orchestrator(backend: RenderBackendAdapter, repository=None, **kwargs) -> JobOrchestrator:
    return JobOrchestrator(BackendRegistry.single(backend), repository or InMemoryBatchRepository(), **kwargs)


async def wait_until(predicate, attempts: int = 200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds
