"""
Base model classes for SyncEngine.

Provides SQLAlchemy declarative base and shared mixins.
Timestamps are stored as naive UTC.
"""
import uuid
from datetime import datetime
from sqlalchemy import DateTime, String, Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

from syncengine.timeutils import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamps to models.

    Python-side defaults keep values comparable with utcnow() on every backend.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False
    )


class TenantOwnedMixin:
    """
    Every tenant-owned table carries tenant_id.

    SECURITY: All queries MUST include a tenant_id filter.
    Failure to do so will result in data leakage between tenants.
    """
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)


def enum_type(enum_cls, length: int = 20):
    """Store a str enum by value in a VARCHAR column."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [member.value for member in members],
    )
