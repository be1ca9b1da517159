"""Inventory sync job handler."""
from sqlalchemy import or_, select

from syncengine.errors import CredentialError, ErrorKind, UnsupportedPlatformError
from syncengine.jobs.handlers.common import STOP_BATCH_KINDS, arg_time, failure_note, note_auth_failure
from syncengine.jobs.outcome import WorkOutcome
from syncengine.models.commerce import InventoryItem
from syncengine.models.tenant import IntegrationKind


async def process_inventory_sync(ctx, args: dict) -> WorkOutcome:
    """Push stock levels that drifted from what the channel was last told."""
    now = arg_time(args, "now")
    outcome = WorkOutcome()

    for integration in await ctx.integrations(IntegrationKind.CHANNEL):
        if ctx.stopping:
            break
        stmt = (
            select(InventoryItem)
            .where(
                InventoryItem.tenant_id == ctx.tenant_id,
                InventoryItem.integration_id == integration.id,
                or_(
                    InventoryItem.pushed_quantity.is_(None),
                    InventoryItem.pushed_quantity != InventoryItem.quantity,
                ),
            )
            .order_by(InventoryItem.sku)
        )
        items = list((await ctx.session.execute(stmt)).scalars().all())
        if not items:
            continue

        try:
            async with ctx.adapter_for(integration) as adapter:
                for item in items:
                    if ctx.stopping:
                        break
                    result = await adapter.push_inventory(item.sku, item.quantity)
                    if not result.ok and result.error.kind == ErrorKind.UNSUPPORTED:
                        break
                    if not result.ok and result.error.kind == ErrorKind.CANCELLED:
                        break
                    outcome.processed += 1
                    if result.ok:
                        item.pushed_quantity = item.quantity
                        item.pushed_at = now
                        outcome.updated += 1
                        await ctx.session.commit()
                        continue
                    outcome.error(f"{item.sku}:{failure_note(integration, result)}")
                    if result.error.kind in STOP_BATCH_KINDS:
                        await note_auth_failure(ctx, integration, result, now)
                        break
        except (CredentialError, UnsupportedPlatformError) as exc:
            outcome.processed += 1
            outcome.error(f"{integration.platform_type}:{type(exc).__name__}")
            ctx.log.warning("inventory_sync_skipped", platform=integration.platform_type, error=str(exc))
    return outcome
