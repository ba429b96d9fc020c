"""
RenderBackendAdapter is the one interface the orchestrator talks to.

Backends differ in completion model:
  - synchronous: submit() returns a terminal status straight away
  - asynchronous: submit() returns a handle that must be polled

Both expose the same submit / poll_status / cancel contract.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from ..errors import TerminalBackendError, TransientBackendError
from ..models import JobSpec, PollResult, SubmitResult

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


class RenderBackendAdapter(ABC):
    name: str = "backend"
    is_async: bool = False
    poll_interval: float = 0.0  # seconds; only meaningful when is_async

    @abstractmethod
    async def submit(self, spec: JobSpec) -> SubmitResult:
        """Start rendering one job."""

    async def poll_status(self, backend_job_id: str) -> PollResult:
        """Current status of a submitted job. Must be safe to call repeatedly."""
        raise NotImplementedError(f"{self.name} does not support polling")

    async def cancel(self, backend_job_id: str) -> None:
        """Best-effort cancel. Backends without a cancel endpoint do nothing."""
        return None


class HttpBackendAdapter(RenderBackendAdapter):
    """
    Base for providers reached over HTTP.

    Every call opens a short-lived httpx.AsyncClient; tests pass a
    `transport` (e.g. httpx.MockTransport) to keep traffic in-process.
    """

    is_async = True
    timeout: float = 30.0

    def __init__(self, api_key: str, api_base: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self._transport = transport

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        """
        Make one HTTP call and classify failures.

        429 / 5xx gateway errors and network problems are transient (the
        scheduler tries again next tick); any other error status is terminal.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise TransientBackendError(f"{self.name} timeout on {method} {url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientBackendError(f"{self.name} network error on {method} {url}: {e}") from e

        if response.status_code in RETRYABLE_STATUS_CODES:
            logger.warning(f"{self.name} {response.status_code} on {method} {url}")
            raise TransientBackendError(f"{self.name} returned {response.status_code}")

        if response.status_code >= 400:
            raise TerminalBackendError(
                f"{self.name} returned {response.status_code}: {response.text[:300]}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransientBackendError(f"{self.name} returned a non-JSON body") from e
