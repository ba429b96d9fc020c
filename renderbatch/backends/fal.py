"""
fal.ai queue render backend (asynchronous, supports cancel).

fal.ai queue protocol:
  POST /{endpoint}                              → { request_id, ... }
  GET  /{endpoint}/requests/{request_id}/status → { status: IN_QUEUE|IN_PROGRESS|COMPLETED }
  GET  /{endpoint}/requests/{request_id}        → result payload
  PUT  /{endpoint}/requests/{request_id}/cancel → best-effort cancel
"""

import logging
from typing import Optional

import httpx

from .. import config
from ..errors import BackendError, TerminalBackendError
from ..models import JobSpec, JobStatus, PollResult, SubmitResult
from .base import HttpBackendAdapter
from .prompts import build_prompt

logger = logging.getLogger(__name__)

IN_PROGRESS_STATUSES = {"IN_QUEUE", "IN_PROGRESS"}
FAILED_STATUSES = {"FAILED", "ERROR", "CANCELLED"}


def extract_video_url(result: dict) -> Optional[str]:
    video = result.get("video")
    if isinstance(video, dict) and video.get("url"):
        return video["url"]
    videos = result.get("videos") or []
    if videos and isinstance(videos[0], dict):
        return videos[0].get("url")
    return result.get("video_url")


class FalQueueBackend(HttpBackendAdapter):
    name = "fal"

    def __init__(
        self,
        api_key: str = "",
        api_base: str = "",
        endpoint: str = "",
        poll_interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key or config.FAL_API_KEY, api_base or config.FAL_API_BASE, transport)
        self.endpoint = endpoint or config.FAL_VIDEO_ENDPOINT
        self.poll_interval = poll_interval if poll_interval is not None else config.FAL_POLL_INTERVAL

    def _headers(self) -> dict:
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    def _request_url(self, request_id: str, suffix: str = "") -> str:
        return f"{self.api_base}/{self.endpoint}/requests/{request_id}{suffix}"

    async def submit(self, spec: JobSpec) -> SubmitResult:
        input_data = {
            "prompt": build_prompt(spec),
            "aspect_ratio": spec.dimensions.get("aspectRatio", "9:16"),
        }
        if spec.dimensions.get("duration"):
            input_data["duration"] = spec.dimensions["duration"]

        logger.info(f"[fal] Submitting job #{spec.index} to {self.endpoint}")
        body = await self._request("POST", f"{self.api_base}/{self.endpoint}", json=input_data)

        request_id = body.get("request_id")
        if request_id:
            return SubmitResult(backend_job_id=request_id)

        # Synchronous response (some endpoints return the result directly)
        url = extract_video_url(body)
        if url:
            return SubmitResult(immediate_status=JobStatus.COMPLETED, result_url=url)
        raise TerminalBackendError(f"No request_id in fal.ai response: {body}")

    async def poll_status(self, backend_job_id: str) -> PollResult:
        status_data = await self._request("GET", self._request_url(backend_job_id, "/status"))
        status = status_data.get("status", "")

        if status in IN_PROGRESS_STATUSES:
            return PollResult(status=JobStatus.PROCESSING)

        if status in FAILED_STATUSES:
            return PollResult(status=JobStatus.FAILED, error=status_data.get("error") or f"fal.ai job {status}")

        if status == "COMPLETED":
            result = await self._request("GET", self._request_url(backend_job_id))
            thumb = result.get("thumbnail") if isinstance(result.get("thumbnail"), dict) else {}
            return PollResult(
                status=JobStatus.COMPLETED,
                result_url=extract_video_url(result),
                thumbnail_url=thumb.get("url"),
            )

        logger.debug(f"[fal] Unrecognized status {status!r} for {backend_job_id}")
        return PollResult(status=JobStatus.PROCESSING)

    async def cancel(self, backend_job_id: str) -> None:
        try:
            await self._request("PUT", self._request_url(backend_job_id, "/cancel"))
            logger.info(f"[fal] Cancel requested for {backend_job_id}")
        except BackendError as e:
            # Already finished or unknown to the queue; local state is authoritative
            logger.warning(f"[fal] Cancel for {backend_job_id} not acknowledged: {e}")
