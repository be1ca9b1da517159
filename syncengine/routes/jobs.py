"""
Job routes.

"Trigger sync now" enqueues a single-tenant run on the arq worker; the
scheduler itself runs inside the worker process.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.database import get_db
from syncengine.dependencies.auth import TokenPayload, get_current_user, require_admin
from syncengine.dependencies.services import JobEnqueuer, get_job_enqueuer
from syncengine.logging_config import get_logger
from syncengine.models.job_run import JobKind, JobRun


router = APIRouter(prefix="/api/jobs", tags=["jobs"])

# Kinds that make sense for one tenant on demand
TRIGGERABLE_KINDS = {
    JobKind.ORDER_SYNC,
    JobKind.INVENTORY_SYNC,
    JobKind.SHIPMENT_TRACKING,
    JobKind.NDR_FOLLOW_UP,
    JobKind.WEBHOOK_RETRY,
}


def job_run_to_dict(run: JobRun) -> dict:
    return {
        "id": run.id,
        "job_kind": run.job_kind.value,
        "outcome": run.outcome.value,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "items_processed": run.items_processed,
        "items_updated": run.items_updated,
        "items_errored": run.items_errored,
        "error_message": run.error_message,
    }


@router.post("/{kind}/trigger", status_code=status.HTTP_202_ACCEPTED)
async def trigger_job(
    kind: JobKind,
    token: TokenPayload = Depends(require_admin),
    enqueue: JobEnqueuer = Depends(get_job_enqueuer),
):
    """Queue one run of `kind` for the caller's tenant."""
    if kind not in TRIGGERABLE_KINDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{kind.value} cannot be triggered on demand"
        )
    job_id = await enqueue(kind.value, token.tenant_id)
    if job_id is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue unavailable"
        )
    get_logger(tenant_id=token.tenant_id).info("job_triggered", job_kind=kind.value, job_id=job_id)
    return {"job_id": job_id, "job_kind": kind.value, "status": "queued"}


@router.get("/runs")
async def list_job_runs(
    kind: Optional[JobKind] = None,
    limit: int = Query(50, ge=1, le=200),
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Recent JobRuns for the caller's tenant, newest first."""
    stmt = select(JobRun).where(JobRun.tenant_id == token.tenant_id)
    if kind is not None:
        stmt = stmt.where(JobRun.job_kind == kind)
    stmt = stmt.order_by(JobRun.started_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return {"runs": [job_run_to_dict(run) for run in result.scalars().all()]}
