"""
ARQ Background Worker for SyncEngine.

Hosts the scheduler (one loop per job kind) and runs on-demand
single-tenant jobs enqueued by the API.

Run with: arq syncengine.worker.WorkerSettings
"""
from typing import Optional

from arq import create_pool
from arq.connections import RedisSettings
from redis.exceptions import RedisError

from syncengine.config import settings
from syncengine.database import AsyncSessionLocal, engine
from syncengine.logging_config import configure_logging, get_logger
from syncengine.models.job_run import JobKind
from syncengine.sentry_config import configure_sentry
from syncengine.services.job_executor import TenantJobExecutor
from syncengine.services.scheduler import Scheduler, job_args_for

log = get_logger(component="worker")


async def run_tenant_job(ctx: dict, job_kind: str, tenant_id: str) -> dict:
    """Run one job kind for one tenant ("trigger sync now")."""
    kind = JobKind(job_kind)
    executor = ctx["executor"]
    summary = await executor.run_for_tenant(kind, tenant_id, job_args_for(kind, settings))
    return {
        "job_kind": kind.value,
        "tenant_id": tenant_id,
        "tenants_processed": summary.tenants_processed,
        "tenants_failed": summary.tenants_failed,
        "items_processed": summary.items_processed,
        "items_updated": summary.items_updated,
        "items_errored": summary.items_errored,
    }


async def enqueue_tenant_job(job_kind: str, tenant_id: str) -> Optional[str]:
    """Enqueue a single-tenant run. Returns the arq job id, or None when Redis is unreachable."""
    try:
        redis = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
    except (RedisError, OSError) as exc:
        log.error("job_enqueue_failed", job_kind=job_kind, tenant_id=tenant_id, error=str(exc))
        return None
    try:
        job = await redis.enqueue_job("run_tenant_job", job_kind, tenant_id)
    finally:
        await redis.aclose()
    log.info("job_enqueued", job_kind=job_kind, tenant_id=tenant_id, job_id=job.job_id if job else None)
    return job.job_id if job else None


async def startup(ctx: dict):
    configure_logging()
    configure_sentry()
    executor = TenantJobExecutor(AsyncSessionLocal, settings)
    scheduler = Scheduler(executor, settings)
    scheduler.start()
    ctx["executor"] = executor
    ctx["scheduler"] = scheduler


async def shutdown(ctx: dict):
    scheduler = ctx.get("scheduler")
    if scheduler is not None:
        await scheduler.shutdown(settings.SCHEDULER_SHUTDOWN_GRACE_SECONDS)
    await engine.dispose()
    log.info("worker_stopped")


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq syncengine.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = 900
    # A failed run is recorded on its JobRun; the next tick starts a fresh one
    max_tries = 1
    functions = [run_tenant_job]
    on_startup = startup
    on_shutdown = shutdown
