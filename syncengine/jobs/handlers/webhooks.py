"""Webhook retry job handler."""
from syncengine.jobs.handlers.common import arg_time
from syncengine.jobs.outcome import WorkOutcome


async def process_webhook_retry(ctx, args: dict) -> WorkOutcome:
    """Re-attempt due outbound deliveries."""
    stats = await ctx.dispatcher().retry_failed_deliveries(
        arg_time(args, "now"),
        limit=args.get("batch_size") or ctx.config.WEBHOOK_RETRY_BATCH_SIZE,
    )
    outcome = WorkOutcome(processed=stats.attempted, updated=stats.delivered)
    for _ in range(stats.exhausted):
        outcome.error("delivery_exhausted")
    return outcome
