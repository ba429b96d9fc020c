"""
Batch progress aggregation.

percent_complete is sweep-weighted: failed and cancelled jobs count as
done, because the sweep over them is finished. success_rate is the separate
completed-only figure. Do not mix the two.
"""

from .models import BatchRecord, BatchSummary, JobStatus


def summarize(batch: BatchRecord) -> BatchSummary:
    jobs = list(batch.jobs)  # snapshot; jobs may change under us between awaits
    total = len(jobs)

    by_status = {status: 0 for status in JobStatus}
    swept = 0
    cost_so_far = 0.0
    total_cost = 0.0

    for job in jobs:
        by_status[job.status] += 1
        total_cost += job.estimated_cost
        if job.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
            swept += 1
        elif job.attempts > 0:
            # Re-queued by retry: already swept once, progress must not drop
            swept += 1
        if job.status == JobStatus.COMPLETED:
            cost_so_far += job.estimated_cost

    completed = by_status[JobStatus.COMPLETED]
    failed = by_status[JobStatus.FAILED]

    return BatchSummary(
        batch_id=batch.id,
        status=batch.status,
        total=total,
        by_status=by_status,
        percent_complete=round(swept / total * 100, 2) if total else 100.0,
        success_rate=round(completed / total * 100, 2) if total else 0.0,
        estimated_cost_so_far=round(cost_so_far, 4),
        estimated_total_cost=round(total_cost, 4),
        failed_label=f"{failed} of {total} failed",
    )
