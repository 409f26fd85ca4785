"""Background loop that refreshes the GeoIP database on a cron schedule."""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from apscheduler.triggers.cron import CronTrigger

from .cancellation import CancellationToken
from .manager import DatabaseManager, RefreshOutcome, RefreshStatus

LOGGER = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ScheduleOracle(Protocol):
    def next_after(self, now: datetime) -> Optional[datetime]:
        ...


_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _weekday_number(token: str) -> int:
    token = token.strip().lower()
    if token in _WEEKDAYS:
        return _WEEKDAYS.index(token)
    number = int(token)
    if not 0 <= number <= 7:
        raise ValueError(f"Day of week {number} is out of range 0-7")
    return number


def _standard_day_of_week(field: str) -> str:
    """Translate a crontab day-of-week field (0 and 7 are Sunday) to day names.

    APScheduler counts weekdays from Monday, so numbers are expanded to
    explicit names rather than passed through.
    """

    if field in ("*", "?"):
        return "*"
    days = set()
    for part in field.split(","):
        base, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step <= 0:
            raise ValueError(f"Invalid step in day of week field: {part!r}")
        if base in ("*", "?"):
            first, last = 0, 6
        elif "-" in base:
            start, _, end = base.partition("-")
            first, last = _weekday_number(start), _weekday_number(end)
            if first > last:
                raise ValueError(f"Invalid day of week range: {part!r}")
        else:
            first = _weekday_number(base)
            last = 6 if step_text else first
        days.update(day % 7 for day in range(first, last + 1, step))
    return ",".join(_WEEKDAYS[day] for day in sorted(days))


class CronSchedule:
    """Standard five-field crontab expression evaluated in UTC."""

    def __init__(self, expression: str) -> None:
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(f"Wrong number of fields; got {len(fields)}, expected 5")
        minute, hour, day, month, day_of_week = fields
        self.expression = expression
        self._trigger = CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_standard_day_of_week(day_of_week),
            timezone="UTC",
        )

    def next_after(self, now: datetime) -> Optional[datetime]:
        """Return the first fire time strictly after ``now``."""

        return self._trigger.get_next_fire_time(None, now + timedelta(microseconds=1))


class SchedulerState(str, enum.Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    REFRESHING = "refreshing"
    STOPPED = "stopped"


def parse_schedule(expression: Optional[str]) -> Optional[CronSchedule]:
    if not expression or not expression.strip():
        LOGGER.info("GeoIP update schedule not configured; scheduled updates disabled")
        return None
    try:
        return CronSchedule(expression.strip())
    except ValueError as exc:
        LOGGER.error("Invalid GeoIP update schedule %r: %s", expression, exc)
        return None


class RefreshScheduler:
    """Run one refresh shortly after start, then one per schedule tick."""

    def __init__(
        self,
        manager: DatabaseManager,
        schedule: Optional[ScheduleOracle],
        clock: Optional[Clock] = None,
        initial_delay: float = 15.0,
        fallback_delay: float = 60.0,
    ) -> None:
        self.manager = manager
        self.schedule = schedule
        self.clock = clock or SystemClock()
        self.initial_delay = initial_delay
        self.fallback_delay = fallback_delay
        self.state = SchedulerState.DISABLED if schedule is None else SchedulerState.IDLE
        self.refresh_count = 0

    @classmethod
    def from_settings(
        cls,
        manager: DatabaseManager,
        clock: Optional[Clock] = None,
    ) -> "RefreshScheduler":
        settings = manager.settings
        return cls(
            manager,
            parse_schedule(settings.geoip_update_schedule),
            clock=clock,
            initial_delay=settings.geoip_initial_delay_seconds,
            fallback_delay=settings.geoip_fallback_delay_seconds,
        )

    async def run(self) -> None:
        LOGGER.info("GeoIP database update service starting")
        try:
            await self._run()
        except asyncio.CancelledError:
            LOGGER.info("GeoIP database update service stopping")
            raise
        finally:
            self.state = SchedulerState.STOPPED
        LOGGER.info("GeoIP database update service finished its loop")

    async def _run(self) -> None:
        await self.clock.sleep(self.initial_delay)
        LOGGER.info("Running initial GeoIP database check/update")
        await self._refresh()

        if self.schedule is None:
            LOGGER.info("Scheduled GeoIP updates disabled; only the initial update ran")
            return

        while True:
            now = self.clock.now()
            next_run = self.schedule.next_after(now)
            if next_run is None:
                LOGGER.warning("Could not determine the next GeoIP update time; stopping schedule")
                return
            delay = (next_run - now).total_seconds()
            if delay <= 0:
                LOGGER.warning(
                    "Next scheduled GeoIP update is not in the future; retrying in %s seconds",
                    self.fallback_delay,
                )
                delay = self.fallback_delay
            LOGGER.info(
                "Next GeoIP database update scheduled",
                extra={"next_run_utc": next_run.isoformat(), "delay_seconds": delay},
            )
            await self.clock.sleep(delay)
            await self._refresh()

    async def _refresh(self) -> Optional[RefreshOutcome]:
        previous = self.state
        self.state = SchedulerState.REFRESHING
        self.refresh_count += 1
        cancel = CancellationToken()
        worker = asyncio.ensure_future(asyncio.to_thread(self.manager.refresh, cancel))
        try:
            outcome = await asyncio.shield(worker)
        except asyncio.CancelledError:
            cancel.cancel()
            await asyncio.wait([worker])
            raise
        except Exception:  # noqa: BLE001
            LOGGER.exception("Error while updating GeoIP database")
            return None
        finally:
            self.state = previous
        if outcome.status is RefreshStatus.SUCCESS:
            LOGGER.info("GeoIP refresh succeeded: %s", outcome.message)
        else:
            LOGGER.info("GeoIP refresh %s: %s", outcome.status.value, outcome.message)
        return outcome
