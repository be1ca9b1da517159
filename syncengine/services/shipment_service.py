"""
Shipment service: booking with a courier and applying tracking updates.

Tracking updates come from the polling job and from courier webhooks; both
go through apply_tracking so a failed delivery opens exactly one NDR case.

SECURITY: All queries MUST include tenant_id filter.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.adapters.base import BaseAdapter, ShipmentRequest, TrackingSnapshot
from syncengine.errors import ErrorKind, Result
from syncengine.logging_config import get_logger
from syncengine.models.commerce import Order, Shipment, ShipmentStatus
from syncengine.services.ndr_service import NdrService
from syncengine.services.webhook_service import WebhookDispatcher
from syncengine.timeutils import utcnow


@dataclass
class TrackingUpdate:
    changed: bool = False
    ndr_id: Optional[str] = None


def shipment_event(shipment: Shipment, previous: Optional[ShipmentStatus]) -> dict:
    return {
        "shipmentId": shipment.id,
        "awb": shipment.awb,
        "courier": shipment.courier,
        "orderRef": shipment.order_ref,
        "status": shipment.status.value,
        "previousStatus": previous.value if previous else None,
        "location": shipment.last_location,
    }


class ShipmentService:
    """Shipment operations for one tenant."""

    def __init__(
        self,
        db: AsyncSession,
        tenant_id: str,
        dispatcher: Optional[WebhookDispatcher] = None,
        ndr: Optional[NdrService] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.dispatcher = dispatcher
        self.ndr = ndr or NdrService(db, tenant_id, dispatcher)
        self.log = get_logger(tenant_id=tenant_id, component="shipments")

    async def get_by_awb(self, courier: str, awb: str) -> Shipment | None:
        stmt = select(Shipment).where(
            Shipment.tenant_id == self.tenant_id,
            Shipment.courier == courier,
            Shipment.awb == awb,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def book(self, adapter: BaseAdapter, order: Order, request: ShipmentRequest) -> Result:
        """
        Create a consignment with the courier and store it.

        Returns:
            Result with the Shipment, or the adapter's failure unchanged
        """
        if order.tenant_id != self.tenant_id:
            return Result.failure(ErrorKind.NOT_FOUND, "order_not_found", "no such order")

        created = await adapter.create_shipment(request)
        if not created.ok:
            self.log.warning(
                "shipment_booking_failed",
                order_id=order.id,
                courier=adapter.platform_type,
                error_kind=created.error.kind.value,
                error_code=created.error.code,
            )
            return created

        shipment = Shipment(
            tenant_id=self.tenant_id,
            order_id=order.id,
            order_ref=order.order_number,
            courier=adapter.platform_type,
            awb=created.value.awb,
            status=ShipmentStatus.MANIFESTED,
            order_value=order.total,
            payment_method=order.payment_method,
            customer_phone=order.customer_phone,
            last_status_at=utcnow(),
        )
        self.db.add(shipment)
        await self.db.commit()
        self.log.info("shipment_booked", shipment_id=shipment.id, awb=shipment.awb, courier=shipment.courier)
        if self.dispatcher is not None:
            await self.dispatcher.dispatch(
                "shipment.created",
                shipment_event(shipment, None),
                idempotency_key=f"shipment.created:{shipment.id}",
            )
        return Result.success(shipment)

    async def apply_tracking(
        self,
        shipment: Shipment,
        tracking: TrackingSnapshot,
        attempt_number: int = 1,
        now: datetime | None = None,
    ) -> TrackingUpdate:
        """
        Record a tracking snapshot on a shipment.

        Unknown statuses only refresh last_tracked_at. A transition into
        delivery_failed opens (or updates) the NDR case for the AWB.
        """
        now = now or utcnow()
        update = TrackingUpdate()
        shipment.last_tracked_at = now

        if tracking.status is None:
            await self.db.commit()
            return update

        previous = shipment.status
        if (
            tracking.occurred_at is not None
            and shipment.last_status_at is not None
            and tracking.occurred_at < shipment.last_status_at
        ):
            # Out-of-order carrier event
            await self.db.commit()
            return update

        shipment.raw_status = tracking.raw_status
        if tracking.location:
            shipment.last_location = tracking.location
        shipment.last_status_at = tracking.occurred_at or now

        is_new_failure = tracking.status == ShipmentStatus.DELIVERY_FAILED
        if tracking.status != previous:
            shipment.status = tracking.status
            update.changed = True
            if tracking.status == ShipmentStatus.DELIVERED:
                shipment.delivered_at = tracking.occurred_at or now
        await self.db.commit()

        if update.changed:
            self.log.info(
                "shipment_status_changed",
                awb=shipment.awb,
                previous=previous.value,
                status=shipment.status.value,
            )
            if self.dispatcher is not None:
                await self.dispatcher.dispatch(
                    "shipment.status_changed",
                    shipment_event(shipment, previous),
                    idempotency_key=f"shipment.status_changed:{shipment.id}:{shipment.status.value}:{shipment.last_status_at.isoformat()}",
                    now=now,
                )

        if is_new_failure and (update.changed or attempt_number > 1):
            record = await self.ndr.create_from_carrier_event(shipment, tracking, attempt_number, now)
            update.ndr_id = record.id
        return update
