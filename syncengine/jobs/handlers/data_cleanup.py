"""Data cleanup job handler."""
from datetime import timedelta

from sqlalchemy import delete, select

from syncengine.jobs.handlers.common import arg_time
from syncengine.jobs.outcome import WorkOutcome
from syncengine.models.job_run import JobRun
from syncengine.models.notification import Notification, NotificationStatus, OperatorAlert
from syncengine.models.webhook import DeliveryStatus, WebhookDelivery


async def purge(session, model, criteria: list, batch_size: int) -> int:
    """Delete matching rows in batches, committing after each batch."""
    total = 0
    while True:
        ids = list((await session.execute(select(model.id).where(*criteria).limit(batch_size))).scalars().all())
        if not ids:
            break
        await session.execute(delete(model).where(model.id.in_(ids)))
        await session.commit()
        total += len(ids)
        if len(ids) < batch_size:
            break
    return total


async def process_data_cleanup(ctx, args: dict) -> WorkOutcome:
    """
    Apply retention to the tenant's operational history.

    Exhausted deliveries are kept until an operator deals with them.
    """
    now = arg_time(args, "now")
    config = ctx.config
    batch_size = config.DATA_CLEANUP_BATCH_SIZE
    webhook_cutoff = now - timedelta(days=config.DATA_CLEANUP_WEBHOOK_RETENTION_DAYS)
    notification_cutoff = now - timedelta(days=config.DATA_CLEANUP_NOTIFICATION_RETENTION_DAYS)
    job_run_cutoff = now - timedelta(days=config.DATA_CLEANUP_JOB_RUN_RETENTION_DAYS)

    removed = {
        "webhook_deliveries": await purge(ctx.session, WebhookDelivery, [
            WebhookDelivery.tenant_id == ctx.tenant_id,
            WebhookDelivery.status == DeliveryStatus.DELIVERED,
            WebhookDelivery.delivered_at < webhook_cutoff,
        ], batch_size),
        "notifications": await purge(ctx.session, Notification, [
            Notification.tenant_id == ctx.tenant_id,
            Notification.status.in_([NotificationStatus.SENT, NotificationStatus.FAILED]),
            Notification.queued_at < notification_cutoff,
        ], batch_size),
        "job_runs": await purge(ctx.session, JobRun, [
            JobRun.tenant_id == ctx.tenant_id,
            JobRun.finished_at.is_not(None),
            JobRun.finished_at < job_run_cutoff,
        ], batch_size),
        "operator_alerts": await purge(ctx.session, OperatorAlert, [
            OperatorAlert.tenant_id == ctx.tenant_id,
            OperatorAlert.resolved_at.is_not(None),
            OperatorAlert.resolved_at < webhook_cutoff,
        ], batch_size),
    }
    ctx.log.info("data_cleanup_complete", **removed)
    total = sum(removed.values())
    return WorkOutcome(processed=total, updated=total)
