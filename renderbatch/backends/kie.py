"""
Kie.ai render backend (asynchronous: submit → poll record-info).

The backend job id handed back to the orchestrator is "<model>|<taskId>"
because the status endpoint differs per model family and the orchestrator
only keeps the opaque handle.
"""

import logging
from typing import Optional

import httpx

from .. import config
from ..errors import TerminalBackendError
from ..models import JobSpec, JobStatus, PollResult, SubmitResult
from ..pricing import normalize_tier
from .base import HttpBackendAdapter
from .prompts import build_prompt

logger = logging.getLogger(__name__)

# Map model names to their API path segments for GENERATION
MODEL_ENDPOINTS = {
    "veo-3.1-fast": "veo",
    "veo-3.1-quality": "veo",
    "sora-2": "runway",          # Sora uses /runway/ endpoint on Kie.ai
    "kling-2.6-pro": "kling",
    "hailuo-2.3": "hailuo",
}

# Some models use record-info, others use record-detail
MODEL_STATUS_PATHS = {
    "veo-3.1-fast": "veo/record-info",
    "veo-3.1-quality": "veo/record-info",
    "sora-2": "runway/record-detail",
    "kling-2.6-pro": "kling/record-info",
    "hailuo-2.3": "hailuo/record-info",
}

MODEL_API_NAMES = {
    "veo-3.1-fast": "veo3_fast",
    "veo-3.1-quality": "veo3",
    "sora-2": "sora2",
    "kling-2.6-pro": "kling2.6_pro",
    "hailuo-2.3": "hailuo2.3",
}

TIER_DEFAULT_MODELS = {
    "low": "hailuo-2.3",
    "medium": "veo-3.1-fast",
    "premium": "veo-3.1-quality",
}
DEFAULT_MODEL = "veo-3.1-fast"

SUCCESS_STATUSES = {"SUCCESS", "success"}
FAILED_STATUSES = {"GENERATE_FAILED", "CREATE_TASK_FAILED", "SENSITIVE_WORD_ERROR", "fail"}

HANDLE_SEPARATOR = "|"


def pick_model(spec: JobSpec) -> str:
    """An explicit `engine` dimension wins, otherwise the tier default."""
    engine = spec.dimensions.get("engine")
    if engine in MODEL_ENDPOINTS:
        return engine
    tier = normalize_tier(spec.dimensions.get("engineTier"))
    return TIER_DEFAULT_MODELS.get(tier, DEFAULT_MODEL)


def normalize_status(poll_data: dict) -> JobStatus:
    """
    Kie.ai uses multiple status indicators:
      1. data.status = "SUCCESS" / "GENERATING" / "PENDING" / "GENERATE_FAILED"
      2. Veo uses data.successFlag = 0 (generating), 1 (success), 2/3 (failed)
    """
    raw_status = poll_data.get("status", "")
    success_flag = poll_data.get("successFlag")

    if raw_status in SUCCESS_STATUSES or success_flag == 1:
        return JobStatus.COMPLETED
    if raw_status in FAILED_STATUSES or success_flag in (2, 3):
        return JobStatus.FAILED
    return JobStatus.PROCESSING


def extract_video_url(poll_data: dict) -> Optional[str]:
    # Kie.ai may use "results" or "works" array, with "url" or "videoUrl" keys
    results = poll_data.get("results") or poll_data.get("works") or []
    if results and isinstance(results, list) and isinstance(results[0], dict):
        first = results[0]
        url = first.get("url") or first.get("videoUrl") or first.get("video_url")
        if url:
            return url
    response = poll_data.get("response")
    if isinstance(response, dict):
        urls = response.get("resultUrls") or []
        if urls:
            return urls[0]
    return poll_data.get("videoUrl") or poll_data.get("url") or poll_data.get("video_url")


class KieBackend(HttpBackendAdapter):
    name = "kie"

    def __init__(
        self,
        api_key: str = "",
        api_base: str = "",
        poll_interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_key or config.KIE_API_KEY, api_base or config.KIE_API_BASE, transport)
        self.poll_interval = poll_interval if poll_interval is not None else config.KIE_POLL_INTERVAL

    async def submit(self, spec: JobSpec) -> SubmitResult:
        model = pick_model(spec)
        url = f"{self.api_base}/{MODEL_ENDPOINTS[model]}/generate"

        payload = {
            "prompt": build_prompt(spec),
            "model": MODEL_API_NAMES[model],
            "aspectRatio": spec.dimensions.get("aspectRatio", "9:16"),
        }
        if spec.dimensions.get("duration"):
            payload["duration"] = spec.dimensions["duration"]

        logger.info(f"Kie.ai submit job #{spec.index}: model={payload['model']}")
        body = await self._request("POST", url, json=payload)

        data = body.get("data") or {}
        task_id = None
        if isinstance(data, dict):
            task_id = data.get("taskId") or data.get("task_id") or data.get("id")
        if not task_id:
            task_id = body.get("taskId") or body.get("task_id")
        if not task_id:
            raise TerminalBackendError(f"Kie.ai accepted no task: {body.get('msg') or body}")

        return SubmitResult(backend_job_id=f"{model}{HANDLE_SEPARATOR}{task_id}")

    async def poll_status(self, backend_job_id: str) -> PollResult:
        model, _, task_id = backend_job_id.partition(HANDLE_SEPARATOR)
        if not task_id:
            model, task_id = DEFAULT_MODEL, backend_job_id

        status_path = MODEL_STATUS_PATHS.get(model, "veo/record-info")
        body = await self._request("GET", f"{self.api_base}/{status_path}", params={"taskId": task_id})

        # Normalize status response (null-safe)
        poll_data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(poll_data, dict):
            poll_data = {}

        status = normalize_status(poll_data)
        if status == JobStatus.COMPLETED:
            return PollResult(
                status=status,
                result_url=extract_video_url(poll_data),
                thumbnail_url=poll_data.get("thumbnailUrl") or poll_data.get("coverUrl"),
            )
        if status == JobStatus.FAILED:
            error = poll_data.get("error") or poll_data.get("msg") or poll_data.get("failReason")
            return PollResult(status=status, error=error or "Unknown Kie.ai error")
        return PollResult(status=status)
