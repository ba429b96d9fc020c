import json

import httpx
import pytest

from renderbatch.backends import (
    BackendRegistry,
    FalQueueBackend,
    KieBackend,
    SimulatedBackend,
    build_default_registry,
)
from renderbatch.backends.kie import normalize_status, pick_model
from renderbatch.backends.prompts import build_prompt
from renderbatch.errors import TerminalBackendError, TransientBackendError
from renderbatch.models import JobSpec, JobStatus

KIE_BASE = "https://kie.test/api/v1"
FAL_BASE = "https://fal.test"


def _kie(handler) -> KieBackend:
    return KieBackend(api_key="kie-key", api_base=KIE_BASE, poll_interval=1, transport=httpx.MockTransport(handler))


def _fal(handler) -> FalQueueBackend:
    return FalQueueBackend(
        api_key="fal-key",
        api_base=FAL_BASE,
        endpoint="fal-ai/video",
        poll_interval=1,
        transport=httpx.MockTransport(handler),
    )


# ── Prompt ───────────────────────────────────────────────────────────────────

def test_build_prompt_uses_dimension_phrases():
    spec = JobSpec(
        index=0,
        source_ref="trail runner",
        dimensions={"hookStyle": "question", "pacing": "fast", "engineTier": "low", "mood": "calm"},
    )
    prompt = build_prompt(spec)
    assert prompt.startswith("Short product advertisement for trail runner.")
    assert "Open with a question hook" in prompt
    assert "fast pacing" in prompt
    assert "mood: calm" in prompt
    assert "engineTier" not in prompt


# ── Simulated ────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_simulated_backend_completes_immediately():
    result = await SimulatedBackend().submit(JobSpec(index=0))
    assert result.immediate_status == JobStatus.COMPLETED
    assert result.result_url.endswith(".mp4")
    assert result.thumbnail_url.startswith("https://picsum.photos/seed/")


@pytest.mark.anyio
async def test_simulated_backend_fails_configured_indices():
    result = await SimulatedBackend(fail_indices={4}).submit(JobSpec(index=4))
    assert result.immediate_status == JobStatus.FAILED
    assert result.error == "Simulated render failure for variation #5"


# ── Kie.ai ───────────────────────────────────────────────────────────────────

def test_pick_model_prefers_explicit_engine():
    assert pick_model(JobSpec(index=0, dimensions={"engine": "sora-2", "engineTier": "low"})) == "sora-2"
    assert pick_model(JobSpec(index=0, dimensions={"engineTier": "cheap"})) == "hailuo-2.3"
    assert pick_model(JobSpec(index=0)) == "veo-3.1-fast"


@pytest.mark.parametrize(
    "data, expected",
    [
        ({"status": "SUCCESS"}, JobStatus.COMPLETED),
        ({"successFlag": 1}, JobStatus.COMPLETED),
        ({"status": "GENERATE_FAILED"}, JobStatus.FAILED),
        ({"successFlag": 3}, JobStatus.FAILED),
        ({"status": "GENERATING"}, JobStatus.PROCESSING),
        ({}, JobStatus.PROCESSING),
    ],
)
def test_kie_normalize_status(data, expected):
    assert normalize_status(data) == expected


@pytest.mark.anyio
async def test_kie_submit_and_poll():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "POST":
            return httpx.Response(200, json={"code": 200, "data": {"taskId": "task-9"}})
        return httpx.Response(
            200,
            json={"data": {"status": "SUCCESS", "results": [{"url": "https://cdn.kie/v.mp4"}], "coverUrl": "https://cdn.kie/c.jpg"}},
        )

    backend = _kie(handler)
    submit = await backend.submit(JobSpec(index=0, dimensions={"engineTier": "low", "aspectRatio": "1:1"}))
    assert submit.backend_job_id == "hailuo-2.3|task-9"

    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/api/v1/hailuo/generate"
    assert seen[0].headers["Authorization"] == "Bearer kie-key"
    assert body["model"] == "hailuo2.3"
    assert body["aspectRatio"] == "1:1"

    poll = await backend.poll_status(submit.backend_job_id)
    assert seen[1].url.path == "/api/v1/hailuo/record-info"
    assert seen[1].url.params["taskId"] == "task-9"
    assert poll.status == JobStatus.COMPLETED
    assert poll.result_url == "https://cdn.kie/v.mp4"
    assert poll.thumbnail_url == "https://cdn.kie/c.jpg"


@pytest.mark.anyio
async def test_kie_poll_failure_carries_reason():
    backend = _kie(lambda request: httpx.Response(200, json={"data": {"successFlag": 2, "failReason": "nsfw"}}))
    poll = await backend.poll_status("veo-3.1-fast|t1")
    assert poll.status == JobStatus.FAILED
    assert poll.error == "nsfw"


@pytest.mark.anyio
async def test_kie_submit_without_task_id_is_terminal():
    backend = _kie(lambda request: httpx.Response(200, json={"code": 422, "msg": "bad prompt"}))
    with pytest.raises(TerminalBackendError, match="bad prompt"):
        await backend.submit(JobSpec(index=0))


@pytest.mark.anyio
@pytest.mark.parametrize("status_code", [429, 502, 503, 504])
async def test_retryable_status_is_transient(status_code):
    backend = _kie(lambda request: httpx.Response(status_code, text="busy"))
    with pytest.raises(TransientBackendError):
        await backend.poll_status("veo-3.1-fast|t1")


@pytest.mark.anyio
async def test_client_error_is_terminal():
    backend = _kie(lambda request: httpx.Response(401, text="unauthorized"))
    with pytest.raises(TerminalBackendError, match="401"):
        await backend.submit(JobSpec(index=0))


@pytest.mark.anyio
async def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientBackendError):
        await _kie(handler).poll_status("veo-3.1-fast|t1")


# ── fal.ai ───────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_fal_submit_poll_and_fetch_result():
    statuses = iter(["IN_QUEUE", "COMPLETED"])

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST":
            assert request.headers["Authorization"] == "Key fal-key"
            return httpx.Response(200, json={"request_id": "req-1"})
        if path.endswith("/status"):
            return httpx.Response(200, json={"status": next(statuses)})
        assert path == "/fal-ai/video/requests/req-1"
        return httpx.Response(200, json={"video": {"url": "https://fal.media/v.mp4"}, "thumbnail": {"url": "https://fal.media/t.jpg"}})

    backend = _fal(handler)
    submit = await backend.submit(JobSpec(index=0, dimensions={"hookStyle": "shock"}))
    assert submit.backend_job_id == "req-1"

    first = await backend.poll_status("req-1")
    assert first.status == JobStatus.PROCESSING

    second = await backend.poll_status("req-1")
    assert second.status == JobStatus.COMPLETED
    assert second.result_url == "https://fal.media/v.mp4"
    assert second.thumbnail_url == "https://fal.media/t.jpg"


@pytest.mark.anyio
async def test_fal_direct_result_completes_on_submit():
    backend = _fal(lambda request: httpx.Response(200, json={"video": {"url": "https://fal.media/now.mp4"}}))
    result = await backend.submit(JobSpec(index=0))
    assert result.immediate_status == JobStatus.COMPLETED
    assert result.result_url == "https://fal.media/now.mp4"


@pytest.mark.anyio
async def test_fal_failed_status():
    backend = _fal(lambda request: httpx.Response(200, json={"status": "ERROR", "error": "out of credits"}))
    poll = await backend.poll_status("req-1")
    assert poll.status == JobStatus.FAILED
    assert poll.error == "out of credits"


@pytest.mark.anyio
async def test_fal_cancel_swallows_backend_errors():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        return httpx.Response(404, text="not found")

    await _fal(handler).cancel("req-1")
    assert calls == [("PUT", "/fal-ai/video/requests/req-1/cancel")]


# ── Registry ─────────────────────────────────────────────────────────────────

def test_registry_routes_by_tier_and_falls_back_to_default():
    registry = BackendRegistry(default="simulated")
    registry.register("simulated", SimulatedBackend())
    registry.register("kie", KieBackend(api_key="k"))

    assert registry.resolve(JobSpec(index=0, dimensions={"engineTier": "medium"})) == "kie"
    assert registry.resolve(JobSpec(index=0, dimensions={"engineTier": "premium"})) == "simulated"
    assert registry.resolve(JobSpec(index=0)) == "simulated"


def test_registry_unknown_backend():
    with pytest.raises(LookupError):
        BackendRegistry().get("nope")


def test_empty_registry_cannot_resolve():
    with pytest.raises(LookupError):
        BackendRegistry().resolve(JobSpec(index=0))


def test_default_registry_only_registers_configured_providers():
    assert build_default_registry({}).names() == ["simulated"]
    assert build_default_registry({"kie": "k", "fal": "f"}).names() == ["simulated", "kie", "fal"]
