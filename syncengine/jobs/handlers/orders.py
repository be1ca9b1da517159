"""Order sync job handler."""
from datetime import datetime, timedelta

from syncengine.errors import CredentialError, ErrorKind, UnsupportedPlatformError
from syncengine.jobs.handlers.common import (
    arg_time,
    clear_auth_failure,
    failure_note,
    note_auth_failure,
)
from syncengine.jobs.outcome import WorkOutcome
from syncengine.models.tenant import IntegrationKind, TenantIntegration
from syncengine.services.order_service import order_event, upsert_order

STALE_CURSOR_KINDS = {ErrorKind.VALIDATION, ErrorKind.NOT_FOUND, ErrorKind.PERMANENT}


async def process_order_sync(ctx, args: dict) -> WorkOutcome:
    """Pull new and updated orders from every channel integration of the tenant."""
    now = arg_time(args, "now")
    default_since = arg_time(args, "since", now - timedelta(hours=ctx.config.ORDER_SYNC_LOOKBACK_HOURS))

    outcome = WorkOutcome()
    for integration in await ctx.integrations(IntegrationKind.CHANNEL):
        if ctx.stopping:
            break
        since = integration.last_synced_at or default_since
        outcome.merge(await _sync_integration(ctx, integration, since, now))
    return outcome


async def _sync_integration(ctx, integration: TenantIntegration, since: datetime, now: datetime) -> WorkOutcome:
    outcome = WorkOutcome()
    log = ctx.log.bind(platform=integration.platform_type, integration_id=integration.id)
    dispatcher = ctx.dispatcher()
    # Resume a pagination pass that an earlier run did not finish
    cursor = integration.sync_cursor
    if cursor:
        log.info("order_sync_resuming", cursor=cursor)
    complete = False

    try:
        async with ctx.adapter_for(integration) as adapter:
            while not ctx.stopping:
                result = await adapter.fetch_orders(since, cursor)
                if not result.ok:
                    if result.error.kind == ErrorKind.UNSUPPORTED:
                        return outcome
                    if result.error.kind != ErrorKind.CANCELLED:
                        outcome.processed += 1
                        outcome.error(failure_note(integration, result))
                        log.warning(
                            "order_sync_failed",
                            error_kind=result.error.kind.value,
                            error_code=result.error.code,
                        )
                        await note_auth_failure(ctx, integration, result, now)
                        if cursor and result.error.kind in STALE_CURSOR_KINDS:
                            # Page tokens expire; the next run starts over from last_synced_at
                            integration.sync_cursor = None
                            await ctx.session.commit()
                    break

                created = []
                for incoming in result.value.orders:
                    order, is_new, changed = await upsert_order(ctx.session, ctx.tenant_id, integration.id, incoming)
                    outcome.processed += 1
                    if changed:
                        outcome.updated += 1
                    if is_new:
                        created.append(order)
                integration.sync_cursor = result.value.next_cursor
                await ctx.session.commit()

                for order in created:
                    await dispatcher.dispatch(
                        "order.created",
                        order_event(order),
                        idempotency_key=f"order.created:{order.id}",
                        now=now,
                    )

                cursor = result.value.next_cursor
                if not cursor:
                    complete = True
                    break
    except (CredentialError, UnsupportedPlatformError) as exc:
        outcome.processed += 1
        outcome.error(f"{integration.platform_type}:{type(exc).__name__}")
        log.warning("order_sync_skipped", error=str(exc))
        return outcome

    if complete:
        integration.last_synced_at = now
        integration.sync_cursor = None
        await clear_auth_failure(ctx, integration, now)
        await ctx.session.commit()
        log.info("order_sync_complete", processed=outcome.processed, updated=outcome.updated)
    return outcome
