"""Notification send job handler."""
from syncengine.jobs.handlers.common import arg_time
from syncengine.jobs.outcome import WorkOutcome
from syncengine.services.notification_service import NotificationSender


async def process_notification_send(ctx, args: dict) -> WorkOutcome:
    """Send the tenant's queued customer notifications."""
    sender = NotificationSender(ctx.session, ctx.tenant_id, ctx.notification_gateway, ctx.config)
    processed, sent, failed = await sender.send_pending(
        args.get("batch_size") or ctx.config.NOTIFICATION_SEND_BATCH_SIZE,
        arg_time(args, "now"),
    )
    outcome = WorkOutcome(processed=processed, updated=sent)
    for _ in range(failed):
        outcome.error("notification_failed")
    return outcome
