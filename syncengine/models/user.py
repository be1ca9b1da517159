"""
User model.

Users are tenant members; agents work NDR cases.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from syncengine.models.base import Base, TimestampMixin, new_id, enum_type


class UserRole(str, enum.Enum):
    """User role within a tenant."""
    ADMIN = "admin"
    AGENT = "agent"
    VIEWER = "viewer"


class User(Base, TimestampMixin):
    """
    Tenant member.

    ndr_capacity overrides the default open-case capacity for agents.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        enum_type(UserRole, length=20),
        nullable=False,
        default=UserRole.AGENT
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    ndr_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"
