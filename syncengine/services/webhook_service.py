"""
Webhook Service

Outbound webhook delivery with a persisted retry store.

Every event becomes one WebhookDelivery per matching subscription, keyed by
(tenant, subscription, idempotency key) so replays never create duplicates.
Failed attempts back off 1m, 5m, 15m, then hourly until the attempt cap,
after which the delivery is exhausted and an operator alert is raised.
"""
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from syncengine.config import Settings, settings
from syncengine.errors import ErrorKind, Result
from syncengine.logging_config import get_logger
from syncengine.metrics import track_webhook_attempt
from syncengine.models.base import new_id
from syncengine.models.notification import AlertKind
from syncengine.models.webhook import DeliveryStatus, WebhookDelivery, WebhookSubscription
from syncengine.services.alert_service import raise_alert, resolve_alerts
from syncengine.timeutils import utcnow


# Backoff after the nth failed attempt, in minutes; the last value repeats.
WEBHOOK_DELAYS_MINUTES = [1, 5, 15, 60]

SIGNATURE_HEADER = "X-Webhook-Signature"


def generate_webhook_signature(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    return hmac.new(
        secret.encode(),
        payload.encode(),
        hashlib.sha256
    ).hexdigest()


def verify_webhook_signature(payload: str, secret: str, header_value: str | None) -> bool:
    """Receiver-side check of an X-Webhook-Signature header (`sha256=<hex>`)."""
    if not header_value or not header_value.startswith("sha256="):
        return False
    expected = generate_webhook_signature(payload, secret)
    return hmac.compare_digest(expected, header_value[len("sha256="):])


def next_retry_delay(attempt_count: int) -> timedelta:
    """Delay before the next attempt after `attempt_count` failed attempts."""
    index = min(max(attempt_count, 1), len(WEBHOOK_DELAYS_MINUTES)) - 1
    return timedelta(minutes=WEBHOOK_DELAYS_MINUTES[index])


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def default_idempotency_key(event_type: str, data: Any) -> str:
    digest = hashlib.sha256(canonical_json(data).encode()).hexdigest()
    return f"{event_type}:{digest}"


@dataclass
class RetryStats:
    attempted: int = 0
    delivered: int = 0
    failed: int = 0
    exhausted: int = 0


class WebhookDispatcher:
    """
    Dispatches tenant events to subscribed endpoints.

    SECURITY: All queries MUST include tenant_id filter.

    dispatch() commits the session: callers persist their state change and the
    deliveries that announce it together, before any network call.
    """

    def __init__(
        self,
        db: AsyncSession,
        tenant_id: str,
        config: Settings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.config = config
        self.transport = transport
        self.log = get_logger(tenant_id=tenant_id, component="webhook_dispatcher")

    async def dispatch(
        self,
        event_type: str,
        data: dict,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> list[WebhookDelivery]:
        """
        Record and attempt delivery of an event to every matching subscription.

        Args:
            event_type: Event name, e.g. "ndr.created"
            data: JSON-serialisable event data
            idempotency_key: Dedup key; defaults to event type + payload hash
            now: Clock override

        Returns:
            The delivery rows for this event (existing rows on replay)
        """
        now = now or utcnow()
        key = idempotency_key or default_idempotency_key(event_type, data)

        stmt = select(WebhookSubscription).where(
            WebhookSubscription.tenant_id == self.tenant_id,
            WebhookSubscription.is_active.is_(True),
        )
        result = await self.db.execute(stmt)
        subscriptions = [s for s in result.scalars().all() if s.subscribes_to(event_type)]

        deliveries: list[WebhookDelivery] = []
        fresh: list[tuple[WebhookDelivery, WebhookSubscription]] = []
        for subscription in subscriptions:
            existing = await self._find_existing(subscription.id, key)
            if existing is not None:
                self.log.info("webhook_delivery_duplicate", delivery_id=existing.id, event_type=event_type)
                deliveries.append(existing)
                continue

            delivery_id = new_id()
            body = canonical_json({
                "eventType": event_type,
                "tenantId": self.tenant_id,
                "data": data,
                "deliveryId": delivery_id,
                "timestamp": now.isoformat() + "Z",
            })
            delivery = WebhookDelivery(
                id=delivery_id,
                tenant_id=self.tenant_id,
                subscription_id=subscription.id,
                event_type=event_type,
                idempotency_key=key,
                payload=body,
                url=subscription.url,
                status=DeliveryStatus.PENDING,
                attempt_count=0,
                # Picked up by the retry job if this process dies before attempting
                next_attempt_at=now + next_retry_delay(1),
            )
            self.db.add(delivery)
            deliveries.append(delivery)
            fresh.append((delivery, subscription))

        if not fresh:
            await self.db.commit()
            return deliveries

        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent dispatch stored the same key first.
            await self.db.rollback()
            self.log.info("webhook_delivery_race", event_type=event_type, idempotency_key=key)
            return [d for d in [await self._find_existing(s.id, key) for s in subscriptions] if d is not None]

        async with self._client() as client:
            for delivery, subscription in fresh:
                await self._attempt(client, delivery, subscription.secret, now)
        await self.db.commit()
        return deliveries

    async def retry_failed_deliveries(self, now: datetime | None = None, limit: int | None = None) -> RetryStats:
        """Attempt every pending or failed delivery whose next_attempt_at has passed."""
        now = now or utcnow()
        stmt = (
            select(WebhookDelivery)
            .options(selectinload(WebhookDelivery.subscription))
            .where(
                WebhookDelivery.tenant_id == self.tenant_id,
                WebhookDelivery.status.in_([DeliveryStatus.PENDING, DeliveryStatus.FAILED]),
                WebhookDelivery.next_attempt_at <= now,
            )
            .order_by(WebhookDelivery.next_attempt_at)
            .limit(limit or self.config.WEBHOOK_RETRY_BATCH_SIZE)
        )
        result = await self.db.execute(stmt)
        due = list(result.scalars().all())

        stats = RetryStats()
        if not due:
            return stats

        async with self._client() as client:
            for delivery in due:
                subscription = delivery.subscription
                if subscription is None or not subscription.is_active:
                    await self._exhaust(delivery, "subscription inactive", now)
                else:
                    await self._attempt(client, delivery, subscription.secret, now)
                stats.attempted += 1
                if delivery.status == DeliveryStatus.DELIVERED:
                    stats.delivered += 1
                elif delivery.status == DeliveryStatus.EXHAUSTED:
                    stats.exhausted += 1
                else:
                    stats.failed += 1
                # Commit per delivery so progress survives a crash mid-batch
                await self.db.commit()

        self.log.info("webhook_retry_pass", **stats.__dict__)
        return stats

    async def requeue_exhausted(self, delivery_id: str, now: datetime | None = None) -> Result:
        """Operator command: give an exhausted delivery one more attempt at the next retry pass."""
        now = now or utcnow()
        stmt = select(WebhookDelivery).where(
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.tenant_id == self.tenant_id,
        )
        result = await self.db.execute(stmt)
        delivery = result.scalar_one_or_none()
        if delivery is None:
            return Result.failure(ErrorKind.NOT_FOUND, "delivery_not_found", "no such delivery")
        if delivery.status != DeliveryStatus.EXHAUSTED:
            return Result.failure(ErrorKind.BUSINESS_RULE, "not_exhausted", "only exhausted deliveries can be requeued")

        delivery.status = DeliveryStatus.PENDING
        delivery.next_attempt_at = now
        await resolve_alerts(self.db, self.tenant_id, AlertKind.WEBHOOK_EXHAUSTED, delivery.id, now)
        await self.db.commit()
        self.log.info("webhook_delivery_requeued", delivery_id=delivery.id)
        return Result.success(delivery)

    async def _find_existing(self, subscription_id: str, key: str) -> WebhookDelivery | None:
        stmt = select(WebhookDelivery).where(
            WebhookDelivery.tenant_id == self.tenant_id,
            WebhookDelivery.subscription_id == subscription_id,
            WebhookDelivery.idempotency_key == key,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.WEBHOOK_TIMEOUT_SECONDS, transport=self.transport)

    async def _attempt(self, client: httpx.AsyncClient, delivery: WebhookDelivery, secret: str, now: datetime):
        """One POST. Records the outcome on the row; never raises for remote failures."""
        signature = generate_webhook_signature(delivery.payload, secret)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: f"sha256={signature}",
            "X-Webhook-Timestamp": str(int(now.replace(tzinfo=timezone.utc).timestamp())),
            "X-Webhook-Delivery-Id": delivery.id,
            "X-Webhook-Event": delivery.event_type,
        }

        delivery.attempt_count += 1
        delivery.last_attempt_at = now
        error: str | None = None
        try:
            response = await client.post(delivery.url, content=delivery.payload, headers=headers)
            delivery.response_code = response.status_code
            if response.is_success:
                delivery.status = DeliveryStatus.DELIVERED
                delivery.delivered_at = now
                delivery.next_attempt_at = None
                delivery.last_error = None
                track_webhook_attempt("delivered")
                self.log.info(
                    "webhook_delivered",
                    delivery_id=delivery.id,
                    event_type=delivery.event_type,
                    attempt=delivery.attempt_count,
                )
                return
            error = f"HTTP {response.status_code}"
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            delivery.response_code = None
            error = f"{type(exc).__name__}: {exc}"

        if delivery.attempt_count >= self.config.WEBHOOK_MAX_ATTEMPTS:
            await self._exhaust(delivery, error, now)
            return

        delivery.status = DeliveryStatus.FAILED
        delivery.last_error = error
        delivery.next_attempt_at = now + next_retry_delay(delivery.attempt_count)
        track_webhook_attempt("failed")
        self.log.warning(
            "webhook_attempt_failed",
            delivery_id=delivery.id,
            event_type=delivery.event_type,
            attempt=delivery.attempt_count,
            error=error,
            next_attempt_at=delivery.next_attempt_at.isoformat(),
        )

    async def _exhaust(self, delivery: WebhookDelivery, error: str, now: datetime):
        delivery.status = DeliveryStatus.EXHAUSTED
        delivery.last_error = error
        delivery.next_attempt_at = None
        track_webhook_attempt("exhausted")
        self.log.error(
            "webhook_delivery_exhausted",
            delivery_id=delivery.id,
            event_type=delivery.event_type,
            attempts=delivery.attempt_count,
            error=error,
        )
        await raise_alert(
            self.db,
            self.tenant_id,
            AlertKind.WEBHOOK_EXHAUSTED,
            delivery.id,
            f"{delivery.event_type} to {delivery.url} gave up after {delivery.attempt_count} attempts: {error}",
            now,
        )
