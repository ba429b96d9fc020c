"""
Batch persistence.

The orchestrator only sees BatchRepository: save / load / list / delete.

Supabase layout:
  render_batches: one row per batch, `settings` holds the VariationRequest blob
  render_batch_jobs: one row per JobRecord, keyed by id, grouped by batch_id

Batch status is derived, it is written to render_batches for dashboards
but never read back.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Optional

from supabase import Client, create_client

from . import config
from .models import BatchRecord, JobRecord, JobSpec, VariationRequest

logger = logging.getLogger(__name__)

BATCH_TABLE = "render_batches"
JOB_TABLE = "render_batch_jobs"


class BatchRepository(ABC):
    @abstractmethod
    def save(self, batch: BatchRecord) -> None: ...

    @abstractmethod
    def load(self, batch_id: str) -> Optional[BatchRecord]: ...

    @abstractmethod
    def list(self, owner_id: str) -> list[BatchRecord]: ...

    @abstractmethod
    def delete(self, batch_id: str) -> None: ...


# ═════════════════════════════════════════════════════════════════════════════
# In-memory (local runs, tests)
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryBatchRepository(BatchRepository):
    """Stores serialized copies so callers never share mutable records with it."""

    def __init__(self):
        self._rows: dict[str, dict] = {}

    def save(self, batch: BatchRecord) -> None:
        self._rows[batch.id] = batch.model_dump(mode="json")

    def load(self, batch_id: str) -> Optional[BatchRecord]:
        row = self._rows.get(batch_id)
        return BatchRecord.model_validate(row) if row else None

    def list(self, owner_id: str) -> list[BatchRecord]:
        rows = [row for row in self._rows.values() if row.get("owner_id") == owner_id]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return [BatchRecord.model_validate(row) for row in rows]

    def delete(self, batch_id: str) -> None:
        self._rows.pop(batch_id, None)


# ═════════════════════════════════════════════════════════════════════════════
# Supabase
# ═════════════════════════════════════════════════════════════════════════════

def _batch_to_row(batch: BatchRecord) -> dict:
    return {
        "id": batch.id,
        "owner_id": batch.owner_id,
        "name": batch.name,
        "settings": batch.settings.model_dump(mode="json") if batch.settings else None,
        "status": batch.status.value,
        "paused": batch.paused,
        "cancelled": batch.cancelled,
        "created_at": batch.created_at,
        "started_at": batch.started_at,
    }


def _job_to_row(batch_id: str, job: JobRecord) -> dict:
    return {
        "id": job.id,
        "batch_id": batch_id,
        "job_index": job.spec.index,
        "dimensions": job.spec.dimensions,
        "source_ref": job.spec.source_ref,
        "status": job.status.value,
        "backend": job.backend,
        "backend_job_id": job.backend_job_id,
        "result_url": job.result_url,
        "thumbnail_url": job.thumbnail_url,
        "error_message": job.error_message,
        "attempts": job.attempts,
        "submitted_at": job.submitted_at,
        "completed_at": job.completed_at,
        "estimated_cost": job.estimated_cost,
    }


def _row_to_job(row: dict) -> JobRecord:
    return JobRecord(
        id=row["id"],
        spec=JobSpec(
            index=row["job_index"],
            dimensions=row.get("dimensions") or {},
            source_ref=row.get("source_ref") or "",
        ),
        status=row["status"],
        backend=row.get("backend") or "",
        backend_job_id=row.get("backend_job_id") or "",
        result_url=row.get("result_url"),
        thumbnail_url=row.get("thumbnail_url"),
        error_message=row.get("error_message"),
        attempts=row.get("attempts", 0),
        submitted_at=row.get("submitted_at"),
        completed_at=row.get("completed_at"),
        estimated_cost=row.get("estimated_cost") or 0.0,
    )


def _row_to_batch(row: dict, job_rows: list[dict]) -> BatchRecord:
    settings = row.get("settings")
    jobs = sorted((_row_to_job(r) for r in job_rows), key=lambda job: job.spec.index)
    return BatchRecord(
        id=row["id"],
        owner_id=row.get("owner_id", ""),
        name=row.get("name", ""),
        settings=VariationRequest.model_validate(settings) if settings else None,
        jobs=jobs,
        created_at=row["created_at"],
        started_at=row.get("started_at"),
        paused=row.get("paused", False),
        cancelled=row.get("cancelled", False),
    )


class SupabaseBatchRepository(BatchRepository):
    """All reads and writes go through the service-role client (bypasses RLS)."""

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    def _sb(self) -> Client:
        """Lazy-init Supabase client using service role key."""
        if self._client is None:
            if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE_KEY:
                raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY)
        return self._client

    def save(self, batch: BatchRecord) -> None:
        sb = self._sb()
        sb.table(BATCH_TABLE).upsert(_batch_to_row(batch)).execute()
        if batch.jobs:
            sb.table(JOB_TABLE).upsert([_job_to_row(batch.id, job) for job in batch.jobs]).execute()
        logger.debug(f"Saved batch {batch.id} ({len(batch.jobs)} jobs)")

    def load(self, batch_id: str) -> Optional[BatchRecord]:
        sb = self._sb()
        result = sb.table(BATCH_TABLE).select("*").eq("id", batch_id).execute()
        if not result.data:
            return None

        jobs = sb.table(JOB_TABLE).select("*").eq("batch_id", batch_id).order("job_index").execute()
        return _row_to_batch(result.data[0], jobs.data or [])

    def list(self, owner_id: str) -> list[BatchRecord]:
        """All batches for an owner, newest first."""
        sb = self._sb()
        result = (
            sb.table(BATCH_TABLE)
            .select("*")
            .eq("owner_id", owner_id)
            .order("created_at", desc=True)
            .execute()
        )
        rows = result.data or []
        if not rows:
            return []

        jobs = sb.table(JOB_TABLE).select("*").in_("batch_id", [row["id"] for row in rows]).execute()
        jobs_by_batch = defaultdict(list)
        for job_row in jobs.data or []:
            jobs_by_batch[job_row["batch_id"]].append(job_row)

        return [_row_to_batch(row, jobs_by_batch[row["id"]]) for row in rows]

    def delete(self, batch_id: str) -> None:
        sb = self._sb()
        sb.table(JOB_TABLE).delete().eq("batch_id", batch_id).execute()
        sb.table(BATCH_TABLE).delete().eq("id", batch_id).execute()
        logger.info(f"Deleted batch {batch_id}")
