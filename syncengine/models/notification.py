"""
Notification outbox and operator alerts.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from syncengine.models.base import Base, TimestampMixin, TenantOwnedMixin, new_id, enum_type
from syncengine.timeutils import utcnow


class NotificationChannel(str, enum.Enum):
    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Notification(Base, TimestampMixin, TenantOwnedMixin):
    """Customer message queued for the notification sender job."""
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notification_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    channel: Mapped[NotificationChannel] = mapped_column(enum_type(NotificationChannel), nullable=False)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    template: Mapped[str] = mapped_column(String(100), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[NotificationStatus] = mapped_column(
        enum_type(NotificationStatus),
        nullable=False,
        default=NotificationStatus.PENDING
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    queued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class AlertKind(str, enum.Enum):
    WEBHOOK_EXHAUSTED = "webhook_exhausted"
    NDR_NO_CAPACITY = "ndr_no_capacity"
    INTEGRATION_AUTH_FAILED = "integration_auth_failed"


class OperatorAlert(Base, TimestampMixin, TenantOwnedMixin):
    """
    Stuck work that needs a human.

    At most one unresolved alert exists per (tenant, kind, reference).
    """
    __tablename__ = "operator_alerts"
    __table_args__ = (
        Index("ix_alert_open", "tenant_id", "kind", "reference", "resolved_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    kind: Mapped[AlertKind] = mapped_column(enum_type(AlertKind, length=40), nullable=False)
    reference: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    raised_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
