"""
Shopify sales channel adapter.

REST Admin API for orders and inventory levels, cursor pagination via the
Link header, base64 HMAC-SHA256 webhook signatures.
"""
import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Mapping, Optional

import httpx

from syncengine.adapters.base import (
    BaseAdapter,
    ChannelOrder,
    InboundEvent,
    InboundEventType,
    OrdersPage,
)
from syncengine.adapters.http import json_body
from syncengine.errors import ErrorKind, Result
from syncengine.models.tenant import IntegrationKind
from syncengine.timeutils import parse_timestamp

PAGE_SIZE = 250

TOPIC_EVENTS = {
    "orders/create": InboundEventType.ORDER_CREATED,
    "orders/updated": InboundEventType.ORDER_UPDATED,
    "orders/paid": InboundEventType.ORDER_UPDATED,
    "orders/fulfilled": InboundEventType.ORDER_UPDATED,
    "orders/cancelled": InboundEventType.ORDER_CANCELLED,
}

INVENTORY_ITEM_QUERY = """
query($q: String!) {
  productVariants(first: 1, query: $q) {
    edges { node { inventoryItem { id } } }
  }
}
"""


def parse_order(data: dict) -> ChannelOrder:
    """Normalise a Shopify order resource. Raises KeyError/ValueError on malformed input."""
    gateways = [str(g).lower() for g in data.get("payment_gateway_names") or []]
    is_cod = any("cod" in g or "cash on delivery" in g for g in gateways)
    address = data.get("shipping_address") or {}
    customer = data.get("customer") or {}
    customer_name = address.get("name") or " ".join(
        part for part in (customer.get("first_name"), customer.get("last_name")) if part
    ) or None

    if data.get("cancelled_at"):
        status = "cancelled"
    elif data.get("fulfillment_status") == "fulfilled":
        status = "fulfilled"
    else:
        status = "open"

    return ChannelOrder(
        external_id=str(data["id"]),
        order_number=str(data.get("name") or data.get("order_number") or data["id"]),
        total=float(data.get("total_price") or 0),
        currency=data.get("currency") or "INR",
        payment_method="cod" if is_cod else "prepaid",
        financial_status=data.get("financial_status"),
        status=status,
        customer_name=customer_name,
        customer_phone=address.get("phone") or data.get("phone") or customer.get("phone"),
        shipping_address=address or None,
        ordered_at=parse_timestamp(data.get("created_at")),
        updated_at=parse_timestamp(data.get("updated_at")),
    )


def next_page_cursor(response: httpx.Response) -> Optional[str]:
    """Extract page_info from the rel="next" Link header, if any."""
    next_url = response.links.get("next", {}).get("url")
    if not next_url:
        return None
    return httpx.URL(next_url).params.get("page_info")


class ShopifyAdapter(BaseAdapter):
    platform_type = "shopify"
    kind = IntegrationKind.CHANNEL
    signature_header = "X-Shopify-Hmac-Sha256"

    @staticmethod
    def base_url(credential, config) -> str:
        return f"https://{credential.external_ref}/admin/api/{config.SHOPIFY_API_VERSION}/"

    @staticmethod
    def auth_headers(credential) -> dict:
        return {"X-Shopify-Access-Token": credential.require("access_token")}

    async def test_connection(self) -> Result:
        result = json_body(await self.http.get("shop.json"))
        if not result.ok:
            return result
        shop = result.value.get("shop") if isinstance(result.value, dict) else None
        return Result.success(shop.get("name") if isinstance(shop, dict) else None)

    async def fetch_orders(self, since: datetime, cursor: Optional[str] = None) -> Result:
        """
        Fetch one page of orders created since `since`.

        Shopify rejects filter params alongside page_info, so follow-up pages
        send only the cursor.
        """
        if cursor:
            params = {"limit": PAGE_SIZE, "page_info": cursor}
        else:
            params = {
                "limit": PAGE_SIZE,
                "status": "any",
                "created_at_min": since.replace(tzinfo=timezone.utc).isoformat(),
            }

        result = await self.http.get("orders.json", params=params)
        if not result.ok:
            return result
        response = result.value
        try:
            orders = [parse_order(item) for item in response.json().get("orders", [])]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            return Result.failure(ErrorKind.PERMANENT, "invalid_payload", f"malformed orders page: {exc}")
        return Result.success(OrdersPage(orders=orders, next_cursor=next_page_cursor(response)))

    async def push_inventory(self, sku: str, quantity: int) -> Result:
        location_id = self.credential.get("location_id")
        if not location_id:
            return Result.failure(ErrorKind.VALIDATION, "missing_location", "no location_id configured")

        lookup = json_body(await self.http.post(
            "graphql.json",
            json={"query": INVENTORY_ITEM_QUERY, "variables": {"q": f"sku:{sku}"}},
        ))
        if not lookup.ok:
            return lookup
        try:
            edges = ((lookup.value.get("data") or {}).get("productVariants") or {}).get("edges") or []
            if not edges:
                return Result.failure(ErrorKind.NOT_FOUND, "sku_not_found", f"no variant with sku {sku}")
            gid = edges[0]["node"]["inventoryItem"]["id"]
            inventory_item_id = int(str(gid).rsplit("/", 1)[-1])
        except (KeyError, TypeError, ValueError, AttributeError, IndexError) as exc:
            return Result.failure(ErrorKind.PERMANENT, "invalid_payload", f"malformed variant lookup: {exc}")

        result = await self.http.post(
            "inventory_levels/set.json",
            json={
                "location_id": int(location_id),
                "inventory_item_id": inventory_item_id,
                "available": quantity,
            },
        )
        if not result.ok:
            return result
        return Result.success(quantity)

    def validate_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        secret = self.credential.webhook_secret or self.credential.get("api_secret")
        if not secret or not signature:
            return False
        digest = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(expected, signature.strip())

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> Result:
        lowered = {key.lower(): value for key, value in headers.items()}
        topic = lowered.get("x-shopify-topic", "")
        try:
            data = json.loads(payload)
        except ValueError:
            return Result.failure(ErrorKind.VALIDATION, "unparseable_payload", "body is not JSON")

        event_type = TOPIC_EVENTS.get(topic)
        if event_type is None:
            return Result.success(InboundEvent(event_type=InboundEventType.IGNORED, raw={"topic": topic}))
        try:
            order = parse_order(data)
        except (KeyError, TypeError, ValueError, AttributeError):
            return Result.failure(ErrorKind.VALIDATION, "unparseable_payload", f"malformed {topic} payload")
        return Result.success(InboundEvent(
            event_type=event_type,
            order=order,
            external_id=order.external_id,
            raw=data,
        ))
