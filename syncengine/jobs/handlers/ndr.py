"""NDR follow-up job handler."""
from syncengine.jobs.handlers.common import arg_time
from syncengine.jobs.outcome import WorkOutcome


async def process_ndr_follow_up(ctx, args: dict) -> WorkOutcome:
    """Escalate overdue cases, then hand unassigned ones to agents."""
    now = arg_time(args, "now")
    ndr = ctx.ndr()

    stats = await ndr.follow_up(ctx.config.NDR_UNASSIGNED_ALERT_HOURS, now)
    assignment = await ctx.assignment().auto_assign(now)
    await ctx.session.commit()
    await ndr.emit_assigned(assignment.assigned, now)

    outcome = WorkOutcome(
        processed=stats.reattempts_overdue + stats.unassigned_escalated + len(assignment.assigned) + assignment.remaining,
        updated=stats.reattempts_overdue + stats.unassigned_escalated + len(assignment.assigned),
    )
    if assignment.no_capacity:
        outcome.notes.append(f"no_capacity:{assignment.remaining}")
    return outcome
