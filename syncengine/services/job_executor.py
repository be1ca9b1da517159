"""
Tenant-scoped job executor.

Runs one unit of work per active tenant, each inside a freshly built
TenantContext. A failure inside one tenant is logged, reported and recorded
on that tenant's JobRun; the remaining tenants still run. Only a
ConfigurationError escapes, because it will fail the same way for everyone.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from syncengine.config import Settings, settings
from syncengine.errors import ConfigurationError
from syncengine.jobs.outcome import WorkOutcome
from syncengine.jobs.registry import JobHandler, resolve_job_handler
from syncengine.logging_config import get_logger
from syncengine.metrics import track_job_run, track_tenant_failure, track_tick_duration
from syncengine.models.job_run import JobKind, JobOutcome, JobRun
from syncengine.sentry_config import capture_exception
from syncengine.services.tenant_context import TenantContextFactory
from syncengine.services.tenant_directory import TenantSnapshot, get_active_tenant, list_active_tenants
from syncengine.timeutils import utcnow

log = get_logger(component="job_executor")


@dataclass
class JobSummary:
    """Aggregate of one tick across tenants."""
    job_kind: JobKind
    tenants_processed: int = 0
    tenants_failed: int = 0
    items_processed: int = 0
    items_updated: int = 0
    items_errored: int = 0
    notes: list[str] = field(default_factory=list)

    def add(self, outcome: JobOutcome, work: WorkOutcome):
        self.tenants_processed += 1
        if outcome == JobOutcome.FAILED:
            self.tenants_failed += 1
        self.items_processed += work.processed
        self.items_updated += work.updated
        self.items_errored += work.errored
        self.notes.extend(work.notes)


def classify(work: WorkOutcome) -> JobOutcome:
    """success when nothing errored, partial when some items did, failed when all did."""
    if work.errored == 0:
        return JobOutcome.SUCCESS
    if work.errored < work.processed:
        return JobOutcome.PARTIAL
    return JobOutcome.FAILED


class TenantJobExecutor:
    """Fans a job kind out over the active tenants."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        config: Settings = settings,
        context_factory: Optional[TenantContextFactory] = None,
        handlers: Optional[Mapping[JobKind, JobHandler]] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.config = config
        self.context_factory = context_factory or TenantContextFactory(session_factory, config)
        self.handlers = handlers
        self.max_concurrency = max(1, max_concurrency or config.JOB_MAX_TENANT_CONCURRENCY)

    async def run_for_all_tenants(
        self,
        kind: JobKind,
        args: Optional[dict] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> JobSummary:
        """
        Run `kind` once for every active tenant.

        Args:
            kind: Job kind to run
            args: Job arguments passed to the handler unchanged
            stop_event: When set, no further tenants are started

        Returns:
            JobSummary across the tenants that ran

        Raises:
            ConfigurationError: no handler for the kind, or a handler hit bad configuration
        """
        handler = resolve_job_handler(kind, self.handlers)
        args = args or {}
        stop_event = stop_event or asyncio.Event()
        started = time.perf_counter()

        tenants = await list_active_tenants(self.session_factory)
        summary = JobSummary(job_kind=kind)

        if self.max_concurrency == 1:
            for tenant in tenants:
                if stop_event.is_set():
                    log.info("job_tick_stopped", job_kind=kind.value, remaining=len(tenants) - summary.tenants_processed)
                    break
                outcome, work = await self._run_isolated(handler, kind, tenant, args, stop_event)
                summary.add(outcome, work)
        else:
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def bounded(tenant: TenantSnapshot):
                async with semaphore:
                    if stop_event.is_set():
                        return None
                    return await self._run_isolated(handler, kind, tenant, args, stop_event)

            results = await asyncio.gather(*(bounded(t) for t in tenants), return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    raise result
                if result is not None:
                    summary.add(*result)

        track_tick_duration(kind.value, time.perf_counter() - started)
        log.info(
            "job_tick_complete",
            job_kind=kind.value,
            tenants_processed=summary.tenants_processed,
            tenants_failed=summary.tenants_failed,
            items_processed=summary.items_processed,
            items_updated=summary.items_updated,
            items_errored=summary.items_errored,
        )
        return summary

    async def run_for_tenant(
        self,
        kind: JobKind,
        tenant_id: str,
        args: Optional[dict] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> JobSummary:
        """Run `kind` for a single tenant with the same isolation as a full tick."""
        handler = resolve_job_handler(kind, self.handlers)
        summary = JobSummary(job_kind=kind)
        tenant = await get_active_tenant(self.session_factory, tenant_id)
        if tenant is None:
            log.warning("job_tenant_not_active", job_kind=kind.value, tenant_id=tenant_id)
            return summary
        outcome, work = await self._run_isolated(handler, kind, tenant, args or {}, stop_event or asyncio.Event())
        summary.add(outcome, work)
        return summary

    async def _run_isolated(
        self,
        handler: JobHandler,
        kind: JobKind,
        tenant: TenantSnapshot,
        args: dict,
        stop_event: asyncio.Event,
    ) -> tuple[JobOutcome, WorkOutcome]:
        run_id = await self._start_run(kind, tenant.id)
        tenant_log = get_logger(tenant_id=tenant.id, job_kind=kind.value, job_run_id=run_id)

        try:
            async with self.context_factory.open(
                tenant, stop_event, job_kind=kind.value, job_run_id=run_id
            ) as ctx:
                work = await handler(ctx, args)
        except ConfigurationError as exc:
            tenant_log.error("job_configuration_error", error=str(exc))
            await self._finish_run(run_id, JobOutcome.FAILED, WorkOutcome(), str(exc))
            raise
        except asyncio.CancelledError:
            await asyncio.shield(self._finish_run(run_id, JobOutcome.FAILED, WorkOutcome(), "cancelled"))
            raise
        except Exception as exc:
            tenant_log.exception("tenant_job_failed", error=str(exc))
            capture_exception(tenant_id=tenant.id, job_kind=kind.value)
            track_tenant_failure(kind.value)
            await self._finish_run(run_id, JobOutcome.FAILED, WorkOutcome(), f"{type(exc).__name__}: {exc}")
            return JobOutcome.FAILED, WorkOutcome()

        outcome = classify(work)
        await self._finish_run(run_id, outcome, work, "; ".join(work.notes[:20]) or None)
        tenant_log.info(
            "tenant_job_complete",
            outcome=outcome.value,
            processed=work.processed,
            updated=work.updated,
            errored=work.errored,
        )
        return outcome, work

    async def _start_run(self, kind: JobKind, tenant_id: str) -> str:
        async with self.session_factory() as db:
            run = JobRun(tenant_id=tenant_id, job_kind=kind, outcome=JobOutcome.RUNNING, started_at=utcnow())
            db.add(run)
            await db.commit()
            return run.id

    async def _finish_run(self, run_id: str, outcome: JobOutcome, work: WorkOutcome, error_message: str | None):
        async with self.session_factory() as db:
            run = (await db.execute(select(JobRun).where(JobRun.id == run_id))).scalar_one()
            run.outcome = outcome
            run.finished_at = utcnow()
            run.items_processed = work.processed
            run.items_updated = work.updated
            run.items_errored = work.errored
            run.error_message = error_message
            await db.commit()
        track_job_run(run.job_kind.value, outcome.value)
