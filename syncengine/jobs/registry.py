"""Job handler registry."""
from typing import Awaitable, Callable, Mapping

from syncengine.errors import ConfigurationError
from syncengine.jobs.handlers import (
    data_cleanup,
    inventory,
    ndr,
    notifications,
    orders,
    tracking,
    webhooks,
)
from syncengine.jobs.outcome import WorkOutcome
from syncengine.models.job_run import JobKind

# (TenantContext, args) -> WorkOutcome
JobHandler = Callable[[object, dict], Awaitable[WorkOutcome]]

JOB_HANDLERS: Mapping[JobKind, JobHandler] = {
    JobKind.ORDER_SYNC: orders.process_order_sync,
    JobKind.INVENTORY_SYNC: inventory.process_inventory_sync,
    JobKind.SHIPMENT_TRACKING: tracking.process_shipment_tracking,
    JobKind.NDR_FOLLOW_UP: ndr.process_ndr_follow_up,
    JobKind.WEBHOOK_RETRY: webhooks.process_webhook_retry,
    JobKind.NOTIFICATION_SEND: notifications.process_notification_send,
    JobKind.DATA_CLEANUP: data_cleanup.process_data_cleanup,
}


def resolve_job_handler(kind: JobKind, handlers: Mapping[JobKind, JobHandler] | None = None) -> JobHandler:
    handler = (handlers if handlers is not None else JOB_HANDLERS).get(kind)
    if not handler:
        raise ConfigurationError(f"No handler registered for job kind: {kind}")
    return handler
