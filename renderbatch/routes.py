"""
HTTP surface for batch generation.

  POST   /batches                         create (optionally start)
  POST   /batches/estimate                cost preview, nothing created
  GET    /batches?owner_id=               list an owner's batches
  GET    /batches/{id}                    batch + jobs
  GET    /batches/{id}/progress           BatchSummary
  POST   /batches/{id}/start|pause|resume|cancel|retry_failed
  POST   /batches/{id}/jobs/{job_id}/retry
  DELETE /batches/{id}
"""

import logging
from contextlib import contextmanager

from fastapi import APIRouter, HTTPException, Query, Request

from .errors import (
    BatchNotFoundError,
    InvalidTransitionError,
    JobNotFoundError,
    RetryRejectedError,
    ValidationError,
)
from .limits import BatchStartLimiter
from .models import BatchCreateRequest, CostEstimateResponse, VariationRequest
from .orchestrator import JobOrchestrator
from .variation import estimate_cost

logger = logging.getLogger(__name__)

batch_router = APIRouter(prefix="/batches", tags=["batches"])


def _orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def _limiter(request: Request) -> BatchStartLimiter:
    return request.app.state.limiter


@contextmanager
def _http_errors(action: str):
    """Map orchestrator errors onto HTTP status codes."""
    try:
        yield
    except HTTPException:
        raise
    except (BatchNotFoundError, JobNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except (InvalidTransitionError, RetryRejectedError) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.error(f"{action} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"{action} failed") from e


# ── Create / estimate ────────────────────────────────────────────────────────

@batch_router.post("", status_code=201)
async def create_batch(body: BatchCreateRequest, request: Request):
    allowed, remaining, retry_after = _limiter(request).check(body.owner_id)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"Batch limit reached. Try again in {retry_after}s.",
            headers={"Retry-After": str(retry_after)},
        )

    orchestrator = _orchestrator(request)
    with _http_errors("Create batch"):
        batch = orchestrator.create_batch(body.name, body.owner_id, body.request)
        if body.start:
            batch = await orchestrator.start(batch.id)

    return {
        "batch": batch.model_dump(mode="json"),
        "summary": orchestrator.summarize(batch.id).model_dump(mode="json"),
        "rate_limit_remaining": remaining,
    }


@batch_router.post("/estimate", response_model=CostEstimateResponse)
async def estimate(body: VariationRequest):
    with _http_errors("Estimate"):
        total, by_tier = estimate_cost(body)
    return CostEstimateResponse(count=body.count, estimated_total_cost=total, by_tier=by_tier)


# ── Read ─────────────────────────────────────────────────────────────────────

@batch_router.get("")
async def list_batches(request: Request, owner_id: str = Query(...)):
    with _http_errors("List batches"):
        batches = _orchestrator(request).list_batches(owner_id)
    return {"batches": [batch.model_dump(mode="json", exclude={"jobs"}) for batch in batches]}


@batch_router.get("/{batch_id}")
async def get_batch(batch_id: str, request: Request):
    with _http_errors("Get batch"):
        batch = _orchestrator(request).get_batch(batch_id)
    return batch.model_dump(mode="json")


@batch_router.get("/{batch_id}/progress")
async def get_progress(batch_id: str, request: Request):
    with _http_errors("Progress"):
        summary = _orchestrator(request).summarize(batch_id)
    return summary.model_dump(mode="json")


# ── Lifecycle ────────────────────────────────────────────────────────────────

@batch_router.post("/{batch_id}/start")
async def start_batch(batch_id: str, request: Request):
    with _http_errors("Start"):
        batch = await _orchestrator(request).start(batch_id)
    return {"batch_id": batch.id, "status": batch.status.value}


@batch_router.post("/{batch_id}/pause")
async def pause_batch(batch_id: str, request: Request):
    with _http_errors("Pause"):
        batch = _orchestrator(request).pause(batch_id)
    return {"batch_id": batch.id, "status": batch.status.value}


@batch_router.post("/{batch_id}/resume")
async def resume_batch(batch_id: str, request: Request):
    with _http_errors("Resume"):
        batch = await _orchestrator(request).resume(batch_id)
    return {"batch_id": batch.id, "status": batch.status.value}


@batch_router.post("/{batch_id}/cancel")
async def cancel_batch(batch_id: str, request: Request):
    with _http_errors("Cancel"):
        batch = await _orchestrator(request).cancel(batch_id)
    return {"batch_id": batch.id, "status": batch.status.value}


@batch_router.post("/{batch_id}/retry_failed")
async def retry_failed(batch_id: str, request: Request):
    with _http_errors("Retry failed"):
        job_ids = await _orchestrator(request).retry_failed(batch_id)
    return {"batch_id": batch_id, "retried": job_ids}


@batch_router.post("/{batch_id}/jobs/{job_id}/retry")
async def retry_job(batch_id: str, job_id: str, request: Request):
    orchestrator = _orchestrator(request)
    with _http_errors("Retry"):
        batch = orchestrator.get_batch(batch_id)
        if batch.find_job(job_id) is None:
            raise JobNotFoundError(f"Job {job_id} not found in batch {batch_id}")
        job = await orchestrator.retry(job_id)
    return job.model_dump(mode="json")


@batch_router.delete("/{batch_id}")
async def delete_batch(batch_id: str, request: Request):
    with _http_errors("Delete"):
        await _orchestrator(request).delete_batch(batch_id)
    return {"batch_id": batch_id, "deleted": True}
