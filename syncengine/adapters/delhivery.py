"""
Delhivery courier adapter.

Shipment booking, tracking and status webhooks. Webhook bodies are signed with
a hex HMAC-SHA256 of the raw body using the platform-wide courier secret.
"""
import hashlib
import hmac
import json
import re
from typing import Any, Mapping, Optional

from syncengine.adapters.base import (
    BaseAdapter,
    InboundEvent,
    InboundEventType,
    ShipmentCreated,
    ShipmentRequest,
    TrackingSnapshot,
)
from syncengine.adapters.http import json_body
from syncengine.errors import ErrorKind, Result
from syncengine.models.commerce import ShipmentStatus
from syncengine.models.ndr import NdrReasonCode
from syncengine.models.tenant import IntegrationKind
from syncengine.timeutils import parse_timestamp

STATUS_CODES = {
    "UD": ShipmentStatus.MANIFESTED,
    "PP": ShipmentStatus.MANIFESTED,
    "OP": ShipmentStatus.MANIFESTED,
    "FM": ShipmentStatus.MANIFESTED,
    "PU": ShipmentStatus.PICKED_UP,
    "IT": ShipmentStatus.IN_TRANSIT,
    "RAD": ShipmentStatus.IN_TRANSIT,
    "LM": ShipmentStatus.IN_TRANSIT,
    "OC": ShipmentStatus.OUT_FOR_DELIVERY,
    "DL": ShipmentStatus.DELIVERED,
    "CN": ShipmentStatus.CANCELLED,
    "CR": ShipmentStatus.CANCELLED,
    "RTO": ShipmentStatus.RTO_INITIATED,
    "RT": ShipmentStatus.RTO_INITIATED,
    "RTD": ShipmentStatus.RTO_DELIVERED,
    "ND": ShipmentStatus.DELIVERY_FAILED,
    "DNA": ShipmentStatus.DELIVERY_FAILED,
    "LT": ShipmentStatus.LOST,
}

# Ordered: the first matching phrase in the carrier remark wins
REASON_KEYWORDS = [
    ("refus", NdrReasonCode.REFUSED),
    ("cod amount", NdrReasonCode.CASH_NOT_READY),
    ("cash not ready", NdrReasonCode.CASH_NOT_READY),
    ("cod not ready", NdrReasonCode.CASH_NOT_READY),
    ("out of station", NdrReasonCode.CUSTOMER_OUT_OF_STATION),
    ("not reachable", NdrReasonCode.CUSTOMER_UNREACHABLE),
    ("unreachable", NdrReasonCode.CUSTOMER_UNREACHABLE),
    ("not contactable", NdrReasonCode.CUSTOMER_UNREACHABLE),
    ("not available", NdrReasonCode.CUSTOMER_NOT_AVAILABLE),
    ("unavailable", NdrReasonCode.CUSTOMER_NOT_AVAILABLE),
    ("address change", NdrReasonCode.ADDRESS_CHANGE_REQUESTED),
    ("incorrect address", NdrReasonCode.INCORRECT_ADDRESS),
    ("incomplete address", NdrReasonCode.INCORRECT_ADDRESS),
    ("wrong address", NdrReasonCode.INCORRECT_ADDRESS),
    ("future", NdrReasonCode.FUTURE_DELIVERY_REQUESTED),
    ("reschedul", NdrReasonCode.FUTURE_DELIVERY_REQUESTED),
    ("closed", NdrReasonCode.PREMISES_CLOSED),
    ("open delivery", NdrReasonCode.OPEN_DELIVERY_REQUESTED),
    ("damage", NdrReasonCode.PRODUCT_DAMAGED),
    ("security", NdrReasonCode.SECURITY_RESTRICTION),
    ("entry restricted", NdrReasonCode.SECURITY_RESTRICTION),
    ("weather", NdrReasonCode.WEATHER_ISSUE),
    ("rain", NdrReasonCode.WEATHER_ISSUE),
]

# Phrases match at a word start, so "rain" never hits "training"
REASON_PATTERNS = [(re.compile(rf"\b{re.escape(phrase)}"), reason) for phrase, reason in REASON_KEYWORDS]


def text_or_none(value: Any) -> Optional[str]:
    """Free-text payload field as a string; couriers are loose about JSON types."""
    if value is None or value == "":
        return None
    return str(value)


def map_status(code: Any) -> Optional[ShipmentStatus]:
    code = text_or_none(code)
    if code is None:
        return None
    return STATUS_CODES.get(code.strip().upper())


def map_ndr_reason(remarks: Any) -> NdrReasonCode:
    text = (text_or_none(remarks) or "").lower()
    for pattern, reason in REASON_PATTERNS:
        if pattern.search(text):
            return reason
    return NdrReasonCode.OTHER


def parse_booking(body: dict) -> Result:
    packages = body.get("packages") or []
    if not body.get("success") or not packages or not packages[0].get("waybill"):
        remarks = "; ".join(
            str(remark) for package in packages for remark in (package.get("remarks") or [])
        ) or text_or_none(body.get("rmk")) or "shipment rejected"
        return Result.failure(ErrorKind.VALIDATION, "shipment_rejected", remarks)

    package = packages[0]
    return Result.success(ShipmentCreated(
        awb=str(package["waybill"]),
        courier_reference=text_or_none(package.get("refnum")),
    ))


def parse_tracking(body: dict, awb: str) -> Result:
    shipments = body.get("ShipmentData") or []
    if not shipments:
        return Result.failure(ErrorKind.NOT_FOUND, "awb_not_found", f"no tracking data for {awb}")
    shipment = shipments[0].get("Shipment") or {}
    status = shipment.get("Status") or {}
    mapped = map_status(status.get("StatusCode") or status.get("StatusType"))
    remarks = text_or_none(status.get("Instructions"))
    return Result.success(TrackingSnapshot(
        awb=str(shipment.get("AWB") or awb),
        status=mapped,
        raw_status=text_or_none(status.get("Status")),
        location=text_or_none(status.get("StatusLocation")),
        occurred_at=parse_timestamp(status.get("StatusDateTime")),
        remarks=remarks,
        ndr_reason=map_ndr_reason(remarks) if mapped == ShipmentStatus.DELIVERY_FAILED else None,
    ))


class DelhiveryAdapter(BaseAdapter):
    platform_type = "delhivery"
    kind = IntegrationKind.COURIER
    signature_header = "X-Delhivery-Signature"

    @staticmethod
    def base_url(credential, config) -> str:
        return credential.get("base_url") or config.DELHIVERY_BASE_URL

    @staticmethod
    def auth_headers(credential) -> dict:
        return {
            "Authorization": f"Token {credential.require('api_token')}",
            "Accept": "application/json",
        }

    async def test_connection(self) -> Result:
        result = await self.http.get("c/api/pin-codes/json/", params={"filter_codes": "110001"})
        if not result.ok:
            return result
        return Result.success(True)

    async def create_shipment(self, request: ShipmentRequest) -> Result:
        """Book a consignment. Delhivery expects form data with a JSON `data` field."""
        shipment = {
            "name": request.customer_name,
            "add": request.address,
            "city": request.city,
            "state": request.state,
            "pin": request.pincode,
            "country": "India",
            "phone": request.customer_phone,
            "order": request.order_ref,
            "payment_mode": "COD" if request.payment_method == "cod" else "Prepaid",
            "cod_amount": request.cod_amount if request.payment_method == "cod" else 0,
            "total_amount": request.total,
            "weight": request.weight_grams,
            "products_desc": request.product_description,
        }
        data = {
            "shipments": [shipment],
            "pickup_location": {"name": self.credential.get("pickup_location", "")},
        }
        result = json_body(await self.http.post(
            "api/cmu/create.json",
            data={"format": "json", "data": json.dumps(data)},
        ))
        if not result.ok:
            return result

        try:
            return parse_booking(result.value)
        except (AttributeError, TypeError, KeyError, IndexError) as exc:
            return Result.failure(ErrorKind.PERMANENT, "invalid_payload", f"malformed booking response: {exc}")

    async def fetch_tracking(self, awb: str) -> Result:
        result = json_body(await self.http.get("api/v1/packages/json/", params={"waybill": awb}))
        if not result.ok:
            return result

        try:
            return parse_tracking(result.value, awb)
        except (AttributeError, TypeError, KeyError, IndexError) as exc:
            return Result.failure(ErrorKind.PERMANENT, "invalid_payload", f"malformed tracking response: {exc}")

    def validate_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        secret = self.credential.webhook_secret
        if not secret or not signature:
            return False
        expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        return hmac.compare_digest(expected, provided.lower())

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> Result:
        try:
            data = json.loads(payload)
        except ValueError:
            data = None
        if not isinstance(data, dict):
            return Result.failure(ErrorKind.VALIDATION, "unparseable_payload", "body is not a JSON object")
        awb = text_or_none(data.get("waybill"))
        if not awb:
            return Result.failure(ErrorKind.VALIDATION, "unparseable_payload", "waybill missing")

        status = map_status(data.get("status_code"))
        if status is None:
            return Result.success(InboundEvent(event_type=InboundEventType.IGNORED, external_id=awb, raw=data))

        remarks = text_or_none(data.get("remarks"))
        is_ndr = status == ShipmentStatus.DELIVERY_FAILED
        tracking = TrackingSnapshot(
            awb=awb,
            status=status,
            raw_status=text_or_none(data.get("status")),
            location=text_or_none(data.get("location")),
            occurred_at=parse_timestamp(data.get("timestamp")),
            remarks=remarks,
            ndr_reason=map_ndr_reason(remarks) if is_ndr else None,
        )
        try:
            attempt_number = int(data.get("attempt") or 1)
        except (TypeError, ValueError):
            attempt_number = 1
        return Result.success(InboundEvent(
            event_type=InboundEventType.NDR if is_ndr else InboundEventType.SHIPMENT_STATUS,
            tracking=tracking,
            external_id=text_or_none(data.get("reference_number")),
            attempt_number=attempt_number,
            raw=data,
        ))
