"""
Platform adapter abstraction.

Each sales channel or courier is reached through an adapter exposing the same
capability interface. Capabilities a platform lacks return an `unsupported`
failure instead of raising. Adapters hold a tenant's credentials only for the
lifetime of an `async with` block.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

from syncengine.adapters.http import PlatformHttpClient
from syncengine.errors import Result, unsupported
from syncengine.models.commerce import ShipmentStatus
from syncengine.models.ndr import NdrReasonCode
from syncengine.models.tenant import IntegrationKind
from syncengine.services.credential_store import AdapterCredential


@dataclass(frozen=True)
class ChannelOrder:
    """Order normalised from a sales channel."""
    external_id: str
    order_number: str
    total: float
    currency: str
    payment_method: str
    financial_status: Optional[str] = None
    status: str = "open"
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address: Optional[dict] = None
    ordered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class OrdersPage:
    orders: list[ChannelOrder]
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class ShipmentRequest:
    order_ref: str
    customer_name: str
    customer_phone: str
    address: str
    city: str
    state: str
    pincode: str
    payment_method: str
    total: float
    cod_amount: float = 0.0
    weight_grams: int = 500
    product_description: str = ""


@dataclass(frozen=True)
class ShipmentCreated:
    awb: str
    courier_reference: Optional[str] = None


@dataclass(frozen=True)
class TrackingSnapshot:
    awb: str
    status: Optional[ShipmentStatus]
    raw_status: Optional[str] = None
    location: Optional[str] = None
    occurred_at: Optional[datetime] = None
    remarks: Optional[str] = None
    ndr_reason: Optional[NdrReasonCode] = None


class InboundEventType(str, enum.Enum):
    ORDER_CREATED = "order_created"
    ORDER_UPDATED = "order_updated"
    ORDER_CANCELLED = "order_cancelled"
    SHIPMENT_STATUS = "shipment_status"
    NDR = "ndr"
    IGNORED = "ignored"


@dataclass(frozen=True)
class InboundEvent:
    """Normalised inbound webhook."""
    event_type: InboundEventType
    order: Optional[ChannelOrder] = None
    tracking: Optional[TrackingSnapshot] = None
    external_id: Optional[str] = None
    attempt_number: int = 1
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)


class PlatformAdapter(Protocol):
    """Capability interface every platform adapter implements."""
    platform_type: str
    kind: IntegrationKind
    signature_header: str

    async def test_connection(self) -> Result: ...
    async def fetch_orders(self, since: datetime, cursor: Optional[str] = None) -> Result: ...
    async def push_inventory(self, sku: str, quantity: int) -> Result: ...
    async def create_shipment(self, request: ShipmentRequest) -> Result: ...
    async def fetch_tracking(self, awb: str) -> Result: ...
    def validate_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool: ...
    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> Result: ...


class BaseAdapter:
    """Shared plumbing: credential, HTTP client, unsupported defaults."""
    platform_type = "base"
    kind = IntegrationKind.CHANNEL
    signature_header = "X-Webhook-Signature"

    def __init__(self, credential: AdapterCredential, http: Optional[PlatformHttpClient] = None):
        self.credential = credential
        self.http = http

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self.http is not None:
            await self.http.aclose()
            self.http = None
        self.credential = None

    async def test_connection(self) -> Result:
        return unsupported("test_connection", self.platform_type)

    async def fetch_orders(self, since: datetime, cursor: Optional[str] = None) -> Result:
        return unsupported("fetch_orders", self.platform_type)

    async def push_inventory(self, sku: str, quantity: int) -> Result:
        return unsupported("push_inventory", self.platform_type)

    async def create_shipment(self, request: ShipmentRequest) -> Result:
        return unsupported("create_shipment", self.platform_type)

    async def fetch_tracking(self, awb: str) -> Result:
        return unsupported("fetch_tracking", self.platform_type)

    def validate_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return False

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> Result:
        return unsupported("parse_webhook", self.platform_type)
