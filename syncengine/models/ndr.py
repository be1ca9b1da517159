"""
NDR (non-delivery report) models.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, Numeric, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from syncengine.models.base import Base, TimestampMixin, TenantOwnedMixin, new_id, enum_type
from syncengine.timeutils import utcnow


class NdrStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    REATTEMPT_SCHEDULED = "reattempt_scheduled"
    RTO_INITIATED = "rto_initiated"
    RESOLVED = "resolved"


class NdrPriority(str, enum.Enum):
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK = {
    NdrPriority.MEDIUM: 1,
    NdrPriority.HIGH: 2,
    NdrPriority.URGENT: 3,
}


class NdrReasonCode(str, enum.Enum):
    """Carrier-reported reason for the failed delivery attempt."""
    CUSTOMER_NOT_AVAILABLE = "customer_not_available"
    REFUSED = "refused"
    INCORRECT_ADDRESS = "incorrect_address"
    FUTURE_DELIVERY_REQUESTED = "future_delivery_requested"
    CUSTOMER_UNREACHABLE = "customer_unreachable"
    PREMISES_CLOSED = "premises_closed"
    CUSTOMER_OUT_OF_STATION = "customer_out_of_station"
    CASH_NOT_READY = "cash_not_ready"
    ADDRESS_CHANGE_REQUESTED = "address_change_requested"
    PRODUCT_DAMAGED = "product_damaged"
    OPEN_DELIVERY_REQUESTED = "open_delivery_requested"
    SECURITY_RESTRICTION = "security_restriction"
    WEATHER_ISSUE = "weather_issue"
    OTHER = "other"


class NdrActionType(str, enum.Enum):
    CALL = "call"
    WHATSAPP = "whatsapp"
    SMS = "sms"
    REATTEMPT = "reattempt"


class NdrActionOutcome(str, enum.Enum):
    NO_ANSWER = "no_answer"
    CALLBACK_REQUESTED = "callback_requested"
    REATTEMPT_REQUESTED = "reattempt_requested"
    REFUSED = "refused"
    ADDRESS_UPDATED = "address_updated"
    OTHER = "other"


class NdrRecord(Base, TimestampMixin, TenantOwnedMixin):
    """
    A delivery exception case.

    due_at is derived from the reason code (and the reattempt date once one
    is scheduled); it is never set from outside the state machine.
    """
    __tablename__ = "ndr_records"
    __table_args__ = (
        Index("ix_ndr_tenant_status", "tenant_id", "status"),
        Index("ix_ndr_tenant_awb", "tenant_id", "awb"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    shipment_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("shipments.id", ondelete="SET NULL"),
        nullable=True
    )
    order_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    awb: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[NdrReasonCode] = mapped_column(enum_type(NdrReasonCode, length=40), nullable=False)
    carrier_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[NdrStatus] = mapped_column(
        enum_type(NdrStatus, length=30),
        nullable=False,
        default=NdrStatus.OPEN
    )
    priority: Mapped[NdrPriority] = mapped_column(enum_type(NdrPriority), nullable=False)
    opened_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    due_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    order_value: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    assigned_user_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reattempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    def __repr__(self):
        return f"<NdrRecord(id={self.id}, awb={self.awb}, status={self.status}, priority={self.priority})>"


class NdrAction(Base, TenantOwnedMixin):
    """Immutable follow-up action. Ordered by (performed_at, sequence)."""
    __tablename__ = "ndr_actions"
    __table_args__ = (
        UniqueConstraint("ndr_id", "sequence", name="uq_ndr_action_sequence"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    ndr_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("ndr_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[NdrActionType] = mapped_column(enum_type(NdrActionType), nullable=False)
    outcome: Mapped[NdrActionOutcome | None] = mapped_column(enum_type(NdrActionOutcome, length=30), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reattempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    performed_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    performed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
