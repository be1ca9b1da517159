"""
JobRun model.

One row per (job kind, tenant) unit of work. Terminal once finished; a failed
run is not retried, the next tick starts a fresh one.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from syncengine.models.base import Base, TenantOwnedMixin, new_id, enum_type
from syncengine.timeutils import utcnow


class JobKind(str, enum.Enum):
    """Background job kinds, one scheduler loop each."""
    ORDER_SYNC = "order_sync"
    INVENTORY_SYNC = "inventory_sync"
    SHIPMENT_TRACKING = "shipment_tracking"
    NDR_FOLLOW_UP = "ndr_follow_up"
    WEBHOOK_RETRY = "webhook_retry"
    NOTIFICATION_SEND = "notification_send"
    DATA_CLEANUP = "data_cleanup"


class JobOutcome(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class JobRun(Base, TenantOwnedMixin):
    """Record of a single unit of work for a single tenant."""
    __tablename__ = "job_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    job_kind: Mapped[JobKind] = mapped_column(
        enum_type(JobKind, length=40),
        nullable=False,
        index=True
    )
    outcome: Mapped[JobOutcome] = mapped_column(
        enum_type(JobOutcome, length=20),
        nullable=False,
        default=JobOutcome.RUNNING
    )
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_errored: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self):
        return f"<JobRun(id={self.id}, kind={self.job_kind}, tenant={self.tenant_id}, outcome={self.outcome})>"
