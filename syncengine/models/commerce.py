"""
Orders, shipments and inventory written by the sync jobs.

Only the columns the background jobs read or write are modelled here.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Integer, Numeric, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from syncengine.models.base import Base, TimestampMixin, TenantOwnedMixin, new_id, enum_type


class ShipmentStatus(str, enum.Enum):
    MANIFESTED = "manifested"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    RTO_INITIATED = "rto_initiated"
    RTO_DELIVERED = "rto_delivered"
    CANCELLED = "cancelled"
    LOST = "lost"


# Statuses the tracking job keeps polling
ACTIVE_SHIPMENT_STATUSES = (
    ShipmentStatus.MANIFESTED,
    ShipmentStatus.PICKED_UP,
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.OUT_FOR_DELIVERY,
    ShipmentStatus.DELIVERY_FAILED,
)


class Order(Base, TimestampMixin, TenantOwnedMixin):
    """Channel order, upserted on (tenant, integration, external_id)."""
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "integration_id", "external_id", name="uq_order_external"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    integration_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tenant_integrations.id", ondelete="CASCADE"),
        nullable=False
    )
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    order_number: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="open")
    financial_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    total: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    shipping_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    ordered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    remote_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Order(id={self.id}, number={self.order_number}, status={self.status})>"


class Shipment(Base, TimestampMixin, TenantOwnedMixin):
    """
    Courier consignment.

    order_value, payment_method and customer_phone are copied from the order
    at booking so NDR priority can be computed from the shipment alone.
    """
    __tablename__ = "shipments"
    __table_args__ = (
        UniqueConstraint("courier", "awb", name="uq_shipment_awb"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True
    )
    order_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    courier: Mapped[str] = mapped_column(String(50), nullable=False)
    awb: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[ShipmentStatus] = mapped_column(
        enum_type(ShipmentStatus, length=30),
        nullable=False,
        default=ShipmentStatus.MANIFESTED
    )
    raw_status: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    order_value: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    last_status_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_tracked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Shipment(id={self.id}, awb={self.awb}, status={self.status})>"


class InventoryItem(Base, TimestampMixin, TenantOwnedMixin):
    """Stock level per SKU, pushed to the channel when it drifts."""
    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("tenant_id", "integration_id", "sku", name="uq_inventory_sku"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    integration_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tenant_integrations.id", ondelete="CASCADE"),
        nullable=False
    )
    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pushed_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pushed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
