"""
Tenant and integration models.

A tenant is a merchant account; an integration is its connection to one
sales channel or courier platform.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from syncengine.models.base import Base, TimestampMixin, new_id, enum_type


class TenantStatus(str, enum.Enum):
    """Tenant lifecycle status."""
    ACTIVE = "active"
    SUSPENDED = "suspended"


class IntegrationKind(str, enum.Enum):
    """What the platform is to the tenant."""
    CHANNEL = "channel"
    COURIER = "courier"


class Tenant(Base, TimestampMixin):
    """Merchant account. Only active tenants are visited by background jobs."""
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    partition_key: Mapped[str] = mapped_column(String(63), nullable=False, unique=True)
    status: Mapped[TenantStatus] = mapped_column(
        enum_type(TenantStatus, length=20),
        nullable=False,
        default=TenantStatus.ACTIVE
    )

    def __repr__(self):
        return f"<Tenant(id={self.id}, partition_key={self.partition_key}, status={self.status})>"


class TenantIntegration(Base, TimestampMixin):
    """
    A tenant's connection to a platform.

    credentials_encrypted holds a Fernet token of the JSON credential bundle.
    external_ref is the platform-side identifier (shop domain, client code)
    used to route inbound channel webhooks to the tenant.
    """
    __tablename__ = "tenant_integrations"
    __table_args__ = (
        UniqueConstraint("platform_type", "external_ref", name="uq_integration_platform_ref"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    platform_type: Mapped[str] = mapped_column(String(50), nullable=False)
    kind: Mapped[IntegrationKind] = mapped_column(
        enum_type(IntegrationKind, length=20),
        nullable=False
    )
    external_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    credentials_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_cursor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self):
        return f"<TenantIntegration(id={self.id}, platform={self.platform_type}, ref={self.external_ref})>"
