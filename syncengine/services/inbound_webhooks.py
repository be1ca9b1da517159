"""
Inbound platform webhooks.

Channel webhooks are routed by (platform, external ref) to the tenant that
owns the integration; courier webhooks are signed with a platform-wide secret
and routed by AWB. The signature is checked before anything is read from or
written to tenant data.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from syncengine.adapters.base import BaseAdapter, InboundEvent, InboundEventType
from syncengine.adapters.factory import AdapterFactory
from syncengine.config import Settings, settings
from syncengine.errors import UnsupportedPlatformError
from syncengine.logging_config import get_logger
from syncengine.metrics import track_inbound_webhook
from syncengine.models.commerce import Shipment
from syncengine.models.tenant import IntegrationKind, Tenant, TenantIntegration, TenantStatus
from syncengine.services.order_service import order_event, upsert_order
from syncengine.services.tenant_context import TenantContextFactory
from syncengine.services.tenant_directory import snapshot
from syncengine.timeutils import utcnow

log = get_logger(component="inbound_webhooks")

ORDER_EVENT_NAMES = {
    InboundEventType.ORDER_CREATED: "order.created",
    InboundEventType.ORDER_UPDATED: "order.updated",
    InboundEventType.ORDER_CANCELLED: "order.cancelled",
}


@dataclass(frozen=True)
class InboundOutcome:
    status_code: int
    body: dict = field(default_factory=dict)


def _rejected(platform: str, status_code: int, reason: str, result: str) -> InboundOutcome:
    track_inbound_webhook(platform, result)
    return InboundOutcome(status_code, {"accepted": False, "error": reason})


class InboundWebhookService:
    """Verifies, parses and applies inbound webhooks."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        config: Settings = settings,
        adapter_factory: Optional[AdapterFactory] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.config = config
        self.adapter_factory = adapter_factory or AdapterFactory(config, transport=transport)
        self.contexts = TenantContextFactory(session_factory, config, self.adapter_factory, transport)
        self.clock = clock

    async def handle_channel(
        self,
        platform_type: str,
        external_ref: str,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> InboundOutcome:
        """Apply an order webhook from a sales channel."""
        try:
            self.adapter_factory.for_inbound(platform_type, None)
        except UnsupportedPlatformError:
            return _rejected(platform_type, 404, "unknown platform", "unknown")

        async with self.session_factory() as db:
            stmt = (
                select(TenantIntegration, Tenant)
                .join(Tenant, Tenant.id == TenantIntegration.tenant_id)
                .where(
                    TenantIntegration.platform_type == platform_type,
                    TenantIntegration.external_ref == external_ref,
                    TenantIntegration.kind == IntegrationKind.CHANNEL,
                    TenantIntegration.is_active.is_(True),
                    Tenant.status == TenantStatus.ACTIVE,
                )
            )
            row = (await db.execute(stmt)).first()
        if row is None:
            return _rejected(platform_type, 404, "unknown integration", "unknown")
        integration, tenant = row

        adapter = self.adapter_factory.for_inbound(platform_type, integration.webhook_secret, external_ref)
        event = self._verify_and_parse(adapter, payload, headers, tenant.id)
        if isinstance(event, InboundOutcome):
            return event

        if event.event_type not in ORDER_EVENT_NAMES or event.order is None:
            track_inbound_webhook(platform_type, "ignored")
            return InboundOutcome(200, {"accepted": True, "ignored": True})

        now = self.clock()
        async with self.contexts.open(snapshot(tenant), platform=platform_type) as ctx:
            order, created, changed = await upsert_order(ctx.session, ctx.tenant_id, integration.id, event.order)
            await ctx.session.commit()
            if changed:
                event_name = "order.created" if created else ORDER_EVENT_NAMES[event.event_type]
                await ctx.dispatcher().dispatch(
                    event_name,
                    order_event(order),
                    idempotency_key=f"{event_name}:{order.id}:{order.remote_updated_at or now}",
                    now=now,
                )
            ctx.log.info("channel_webhook_applied", order_id=order.id, created=created, changed=changed)

        track_inbound_webhook(platform_type, "accepted")
        return InboundOutcome(200, {"accepted": True, "orderId": order.id})

    async def handle_courier(
        self,
        platform_type: str,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> InboundOutcome:
        """Apply a tracking or NDR webhook from a courier."""
        try:
            adapter = self.adapter_factory.for_inbound(
                platform_type, self.config.COURIER_WEBHOOK_SECRETS.get(platform_type)
            )
        except UnsupportedPlatformError:
            return _rejected(platform_type, 404, "unknown platform", "unknown")

        event = self._verify_and_parse(adapter, payload, headers, None)
        if isinstance(event, InboundOutcome):
            return event
        if event.tracking is None:
            track_inbound_webhook(platform_type, "ignored")
            return InboundOutcome(200, {"accepted": True, "ignored": True})

        async with self.session_factory() as db:
            stmt = (
                select(Shipment, Tenant)
                .join(Tenant, Tenant.id == Shipment.tenant_id)
                .where(
                    Shipment.courier == platform_type,
                    Shipment.awb == event.tracking.awb,
                    Tenant.status == TenantStatus.ACTIVE,
                )
            )
            row = (await db.execute(stmt)).first()
        if row is None:
            log.info("courier_webhook_unmatched", platform=platform_type, awb=event.tracking.awb)
            track_inbound_webhook(platform_type, "unmatched")
            return InboundOutcome(200, {"accepted": True, "matched": False})
        found, tenant = row

        now = self.clock()
        async with self.contexts.open(snapshot(tenant), platform=platform_type) as ctx:
            shipment = (await ctx.session.execute(
                select(Shipment).where(Shipment.id == found.id, Shipment.tenant_id == ctx.tenant_id)
            )).scalar_one()
            update = await ctx.shipments().apply_tracking(shipment, event.tracking, event.attempt_number, now)
            ctx.log.info(
                "courier_webhook_applied",
                awb=shipment.awb,
                status=shipment.status.value,
                changed=update.changed,
                ndr_id=update.ndr_id,
            )

        track_inbound_webhook(platform_type, "accepted")
        body = {"accepted": True, "matched": True, "status": shipment.status.value}
        if update.ndr_id:
            body["ndrId"] = update.ndr_id
        return InboundOutcome(200, body)

    def _verify_and_parse(
        self,
        adapter: BaseAdapter,
        payload: bytes,
        headers: Mapping[str, str],
        tenant_id: Optional[str],
    ) -> InboundEvent | InboundOutcome:
        platform = adapter.platform_type
        signature = next(
            (value for key, value in headers.items() if key.lower() == adapter.signature_header.lower()),
            None,
        )
        if not adapter.validate_webhook_signature(payload, signature):
            log.warning("inbound_webhook_bad_signature", platform=platform, tenant_id=tenant_id)
            return _rejected(platform, 401, "invalid signature", "bad_signature")

        result = adapter.parse_webhook(payload, headers)
        if not result.ok:
            log.warning(
                "inbound_webhook_unparseable",
                platform=platform,
                tenant_id=tenant_id,
                error_code=result.error.code,
            )
            return _rejected(platform, 400, result.error.message or "unparseable payload", "unparseable")
        return result.value
