"""
Notification service.

Customer messages are queued as Notification rows inside the tenant's
transaction and sent later by the notification sender job through the
gateway.
"""
from datetime import datetime
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.config import Settings, settings
from syncengine.errors import ConfigurationError
from syncengine.logging_config import get_logger
from syncengine.models.notification import Notification, NotificationChannel, NotificationStatus
from syncengine.timeutils import utcnow

log = get_logger(component="notifications")


def queue_notification(
    db: AsyncSession,
    tenant_id: str,
    channel: NotificationChannel,
    recipient: str,
    template: str,
    body: str,
    reference_id: str | None = None,
) -> Notification:
    """Add a pending notification to the session. The caller commits."""
    notification = Notification(
        tenant_id=tenant_id,
        channel=channel,
        recipient=recipient,
        template=template,
        body=body,
        reference_id=reference_id,
        status=NotificationStatus.PENDING,
    )
    db.add(notification)
    return notification


class NotificationGateway:
    """HTTP gateway that fans messages out to SMS, WhatsApp and email providers."""

    def __init__(self, config: Settings = settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.transport = transport

    async def send(self, channel: NotificationChannel, recipient: str, body: str, tenant_id: str) -> tuple[bool, str | None]:
        """
        Send one message.

        Returns:
            (sent, error) - error is None on success
        """
        if not self.config.NOTIFICATION_GATEWAY_URL:
            raise ConfigurationError("NOTIFICATION_GATEWAY_URL not configured")

        headers = {}
        if self.config.NOTIFICATION_GATEWAY_TOKEN:
            headers["Authorization"] = f"Bearer {self.config.NOTIFICATION_GATEWAY_TOKEN}"
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
                response = await client.post(
                    self.config.NOTIFICATION_GATEWAY_URL,
                    json={"channel": channel.value, "to": recipient, "body": body, "tenantId": tenant_id},
                    headers=headers,
                )
        except httpx.InvalidURL as exc:
            raise ConfigurationError(f"NOTIFICATION_GATEWAY_URL is invalid: {exc}") from exc
        except httpx.HTTPError as exc:
            return False, f"{type(exc).__name__}: {exc}"
        if response.is_success:
            return True, None
        return False, f"HTTP {response.status_code}"


class NotificationSender:
    """
    Sends a tenant's pending notifications.

    SECURITY: All queries MUST include tenant_id filter.
    """

    def __init__(self, db: AsyncSession, tenant_id: str, gateway: NotificationGateway, config: Settings = settings):
        self.db = db
        self.tenant_id = tenant_id
        self.gateway = gateway
        self.config = config

    async def send_pending(self, batch_size: int, now: datetime | None = None) -> tuple[int, int, int]:
        """
        Send up to `batch_size` pending notifications, oldest first.

        Returns:
            (processed, sent, failed)
        """
        now = now or utcnow()
        stmt = (
            select(Notification)
            .where(
                Notification.tenant_id == self.tenant_id,
                Notification.status == NotificationStatus.PENDING,
            )
            .order_by(Notification.queued_at)
            .limit(batch_size)
        )
        result = await self.db.execute(stmt)
        pending = list(result.scalars().all())

        sent = failed = 0
        for notification in pending:
            ok, error = await self.gateway.send(
                notification.channel, notification.recipient, notification.body, self.tenant_id
            )
            notification.attempt_count += 1
            if ok:
                notification.status = NotificationStatus.SENT
                notification.sent_at = now
                notification.last_error = None
                sent += 1
            else:
                notification.last_error = error
                if notification.attempt_count >= self.config.NOTIFICATION_MAX_ATTEMPTS:
                    notification.status = NotificationStatus.FAILED
                    failed += 1
                log.warning(
                    "notification_send_failed",
                    tenant_id=self.tenant_id,
                    notification_id=notification.id,
                    attempt=notification.attempt_count,
                    error=error,
                )
            await self.db.commit()
        return len(pending), sent, failed
