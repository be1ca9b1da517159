"""Shipment tracking job handler."""
from collections import defaultdict
from datetime import timedelta

from sqlalchemy import func, select

from syncengine.errors import CredentialError, ErrorKind, UnsupportedPlatformError
from syncengine.jobs.handlers.common import STOP_BATCH_KINDS, arg_time, failure_note, note_auth_failure
from syncengine.jobs.outcome import WorkOutcome
from syncengine.models.commerce import ACTIVE_SHIPMENT_STATUSES, Shipment
from syncengine.models.tenant import IntegrationKind


async def process_shipment_tracking(ctx, args: dict) -> WorkOutcome:
    """
    Poll couriers for shipments not tracked recently.

    Oldest-tracked shipments go first; a delivery failure opens an NDR case.
    """
    now = arg_time(args, "now")
    stale_before = arg_time(
        args, "stale_before", now - timedelta(hours=ctx.config.SHIPMENT_TRACKING_STALE_AFTER_HOURS)
    )
    last_seen = func.coalesce(Shipment.last_tracked_at, Shipment.created_at)
    stmt = (
        select(Shipment)
        .where(
            Shipment.tenant_id == ctx.tenant_id,
            Shipment.status.in_(ACTIVE_SHIPMENT_STATUSES),
            last_seen < stale_before,
        )
        .order_by(last_seen)
        .limit(args.get("batch_size") or ctx.config.SHIPMENT_TRACKING_BATCH_SIZE)
    )
    shipments = list((await ctx.session.execute(stmt)).scalars().all())

    outcome = WorkOutcome()
    if not shipments:
        return outcome

    by_courier = defaultdict(list)
    for shipment in shipments:
        by_courier[shipment.courier].append(shipment)
    integrations = {i.platform_type: i for i in await ctx.integrations(IntegrationKind.COURIER)}
    service = ctx.shipments()

    for courier, batch in by_courier.items():
        if ctx.stopping:
            break
        integration = integrations.get(courier)
        if integration is None:
            outcome.processed += len(batch)
            for shipment in batch:
                outcome.error(f"{shipment.awb}:no_integration:{courier}")
            continue

        try:
            async with ctx.adapter_for(integration) as adapter:
                for shipment in batch:
                    if ctx.stopping:
                        break
                    result = await adapter.fetch_tracking(shipment.awb)
                    if not result.ok and result.error.kind in (ErrorKind.UNSUPPORTED, ErrorKind.CANCELLED):
                        break
                    outcome.processed += 1
                    if not result.ok:
                        outcome.error(f"{shipment.awb}:{failure_note(integration, result)}")
                        if result.error.kind in STOP_BATCH_KINDS:
                            await note_auth_failure(ctx, integration, result, now)
                            break
                        continue
                    update = await service.apply_tracking(shipment, result.value, now=now)
                    if update.changed:
                        outcome.updated += 1
        except (CredentialError, UnsupportedPlatformError) as exc:
            outcome.processed += len(batch)
            for shipment in batch:
                outcome.error(f"{shipment.awb}:{type(exc).__name__}")
            ctx.log.warning("shipment_tracking_skipped", platform=courier, error=str(exc))
    return outcome
