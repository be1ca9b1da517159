"""
Scheduler.

One asyncio task per job kind, each on its own cadence. A kind's tick never
waits on another kind. Shutdown sets a shared stop event, gives in-flight
ticks a grace period and then cancels them.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping, Optional

from syncengine.config import Settings, settings
from syncengine.errors import ConfigurationError
from syncengine.logging_config import get_logger
from syncengine.models.job_run import JobKind
from syncengine.sentry_config import capture_exception
from syncengine.services.job_executor import TenantJobExecutor
from syncengine.timeutils import seconds_until_daily, utcnow

log = get_logger(component="scheduler")

# Config field prefix per kind: <PREFIX>_ENABLED, <PREFIX>_INTERVAL_MINUTES, ...
CONFIG_PREFIX = {
    JobKind.ORDER_SYNC: "ORDER_SYNC",
    JobKind.INVENTORY_SYNC: "INVENTORY_SYNC",
    JobKind.SHIPMENT_TRACKING: "SHIPMENT_TRACKING",
    JobKind.NDR_FOLLOW_UP: "NDR_FOLLOW_UP",
    JobKind.WEBHOOK_RETRY: "WEBHOOK_RETRY",
    JobKind.NOTIFICATION_SEND: "NOTIFICATION_SEND",
    JobKind.DATA_CLEANUP: "DATA_CLEANUP",
}


@dataclass(frozen=True)
class JobSchedule:
    kind: JobKind
    enabled: bool
    interval: Optional[timedelta] = None
    run_at_hour: Optional[int] = None
    initial_delay: float = 0.0

    def next_delay(self, now: datetime, elapsed: float) -> float:
        """Seconds to sleep after a tick that took `elapsed` seconds."""
        if self.run_at_hour is not None:
            return seconds_until_daily(now, self.run_at_hour)
        return max(0.0, self.interval.total_seconds() - elapsed)


def schedule_for(kind: JobKind, config: Settings = settings) -> JobSchedule:
    """
    Build a kind's schedule from settings.

    Raises:
        ConfigurationError: non-positive interval or an hour outside 0-23
    """
    prefix = CONFIG_PREFIX[kind]
    enabled = getattr(config, f"{prefix}_ENABLED")

    if kind == JobKind.DATA_CLEANUP:
        hour = config.DATA_CLEANUP_RUN_AT_HOUR
        if not 0 <= hour <= 23:
            raise ConfigurationError(f"DATA_CLEANUP_RUN_AT_HOUR must be 0-23, got {hour}")
        return JobSchedule(kind=kind, enabled=enabled, run_at_hour=hour)

    minutes = getattr(config, f"{prefix}_INTERVAL_MINUTES")
    if minutes <= 0:
        raise ConfigurationError(f"{prefix}_INTERVAL_MINUTES must be positive, got {minutes}")
    initial_delay = getattr(config, f"{prefix}_INITIAL_DELAY_SECONDS")
    if initial_delay < 0:
        raise ConfigurationError(f"{prefix}_INITIAL_DELAY_SECONDS must not be negative")
    return JobSchedule(
        kind=kind,
        enabled=enabled,
        interval=timedelta(minutes=minutes),
        initial_delay=float(initial_delay),
    )


def build_schedules(config: Settings = settings, kinds: Optional[Iterable[JobKind]] = None) -> list[JobSchedule]:
    return [schedule_for(kind, config) for kind in (kinds or list(JobKind))]


def job_args_for(kind: JobKind, config: Settings = settings, now: Optional[datetime] = None) -> dict:
    """Arguments for one tick; timestamps are ISO strings so they survive arq serialisation."""
    now = now or utcnow()
    args = {"now": now.isoformat()}
    if kind == JobKind.ORDER_SYNC:
        args["since"] = (now - timedelta(hours=config.ORDER_SYNC_LOOKBACK_HOURS)).isoformat()
    elif kind == JobKind.SHIPMENT_TRACKING:
        args["stale_before"] = (now - timedelta(hours=config.SHIPMENT_TRACKING_STALE_AFTER_HOURS)).isoformat()
        args["batch_size"] = config.SHIPMENT_TRACKING_BATCH_SIZE
    elif kind == JobKind.NOTIFICATION_SEND:
        args["batch_size"] = config.NOTIFICATION_SEND_BATCH_SIZE
    elif kind == JobKind.WEBHOOK_RETRY:
        args["batch_size"] = config.WEBHOOK_RETRY_BATCH_SIZE
    return args


class Scheduler:
    """Owns the per-kind loops."""

    def __init__(
        self,
        executor: TenantJobExecutor,
        config: Settings = settings,
        kinds: Optional[Iterable[JobKind]] = None,
        schedule_overrides: Optional[Mapping[JobKind, JobSchedule]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.executor = executor
        self.config = config
        self.kinds = list(kinds or JobKind)
        self.schedule_overrides = dict(schedule_overrides or {})
        self.clock = clock
        self.stop_event = asyncio.Event()
        self.tasks: dict[JobKind, asyncio.Task] = {}

    def start(self):
        """
        Start one loop per enabled kind.

        Raises:
            ConfigurationError: a schedule is invalid; nothing is started
        """
        schedules = [self.schedule_overrides.get(kind) or schedule_for(kind, self.config) for kind in self.kinds]
        for schedule in schedules:
            if not schedule.enabled:
                log.info("job_disabled", job_kind=schedule.kind.value)
                continue
            self.tasks[schedule.kind] = asyncio.create_task(
                self._run_loop(schedule), name=f"scheduler:{schedule.kind.value}"
            )
        log.info("scheduler_started", job_kinds=[kind.value for kind in self.tasks])

    @property
    def running(self) -> list[JobKind]:
        return [kind for kind, task in self.tasks.items() if not task.done()]

    async def _sleep(self, seconds: float) -> bool:
        """Wait up to `seconds`; True when the stop event fired."""
        if seconds <= 0:
            return self.stop_event.is_set()
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_loop(self, schedule: JobSchedule):
        kind = schedule.kind
        first_delay = (
            seconds_until_daily(self.clock(), schedule.run_at_hour)
            if schedule.run_at_hour is not None
            else schedule.initial_delay
        )
        if await self._sleep(first_delay):
            return

        loop = asyncio.get_running_loop()
        while not self.stop_event.is_set():
            started = loop.time()
            try:
                args = job_args_for(kind, self.config, self.clock())
                await self.executor.run_for_all_tenants(kind, args, self.stop_event)
            except ConfigurationError as exc:
                log.error("job_kind_stopped", job_kind=kind.value, error=str(exc))
                capture_exception(job_kind=kind.value)
                return
            except Exception as exc:
                log.exception("job_tick_failed", job_kind=kind.value, error=str(exc))
                capture_exception(job_kind=kind.value)

            elapsed = loop.time() - started
            if await self._sleep(schedule.next_delay(self.clock(), elapsed)):
                return

    async def shutdown(self, grace_seconds: Optional[float] = None):
        """Stop every loop, waiting up to the grace period before cancelling."""
        grace = self.config.SCHEDULER_SHUTDOWN_GRACE_SECONDS if grace_seconds is None else grace_seconds
        self.stop_event.set()
        pending = [task for task in self.tasks.values() if not task.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            task.cancel()
        if still_running:
            log.warning("scheduler_cancelled_in_flight", job_kinds=[t.get_name() for t in still_running])
            await asyncio.gather(*still_running, return_exceptions=True)
        log.info("scheduler_stopped")
