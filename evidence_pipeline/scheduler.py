"""Recurring ingestion runs.

``IngestionScheduler`` fires an ingestion job on a five-field cron expression
(minute, hour, day of month, month, day of week; evaluated in UTC) or on a
fixed interval. A tick that arrives while the previous run is still in
progress is skipped, never queued, and a failing run is logged without
stopping the scheduler.

Example:
    scheduler = IngestionScheduler.from_config(lambda: ingest(config, "scheduled"))
    await scheduler.run()
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Protocol

from config.settings import GlobalConfig, get_config
from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import IngestionRunReport, as_utc, utc_now

log = get_logger(__name__)

DEFAULT_CRON = "0 6 * * 1"

# (low, high) per field; day of week accepts 7 as a second Sunday
_FIELD_BOUNDS = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 7))
_SEARCH_HORIZON = timedelta(days=5 * 366)

Job = Callable[[], Awaitable[IngestionRunReport | None]]


def _parse_field(field: str, low: int, high: int) -> frozenset[int]:
    """Values matched by one cron field: ``*``, ``n``, ``a-b``, ``*/s``, ``a-b/s``, lists."""
    values: set[int] = set()
    for part in field.split(","):
        base, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if base == "*":
            start, end = low, high
        elif "-" in base:
            start_text, end_text = base.split("-", 1)
            start, end = int(start_text), int(end_text)
        else:
            start = int(base)
            end = high if step_text else start
        if step < 1 or not low <= start <= end <= high:
            raise ValueError(f"cron field '{part}' outside {low}-{high}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


class Schedule(Protocol):
    def next_after(self, moment: datetime) -> datetime: ...


class CronSchedule:
    """Cron expression evaluated in UTC at minute resolution.

    When both day of month and day of week are restricted, a day matching
    either one fires, as in cron.

    Raises:
        ValueError: If the expression does not have five valid fields.
    """

    def __init__(self, expression: str) -> None:
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(f"cron expression needs 5 fields, got {len(fields)}: '{expression}'")
        self.expression = " ".join(fields)
        minutes, hours, days, months, weekdays = (
            _parse_field(field, low, high) for field, (low, high) in zip(fields, _FIELD_BOUNDS)
        )
        self.minutes = minutes
        self.hours = hours
        self.days = days
        self.months = months
        self.weekdays = frozenset(0 if day == 7 else day for day in weekdays)
        self._days_restricted = not fields[2].startswith("*")
        self._weekdays_restricted = not fields[4].startswith("*")

    def __str__(self) -> str:
        return self.expression

    def _day_matches(self, moment: datetime) -> bool:
        in_days = moment.day in self.days
        in_weekdays = moment.isoweekday() % 7 in self.weekdays
        if self._days_restricted and self._weekdays_restricted:
            return in_days or in_weekdays
        return in_days and in_weekdays

    def matches(self, moment: datetime) -> bool:
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self._day_matches(moment)
        )

    def next_after(self, moment: datetime) -> datetime:
        """First matching minute strictly after ``moment``."""
        candidate = as_utc(moment).replace(second=0, microsecond=0) + timedelta(minutes=1)
        horizon = candidate + _SEARCH_HORIZON
        while candidate < horizon:
            if candidate.month not in self.months:
                first = candidate.replace(day=1, hour=0, minute=0)
                candidate = (first + timedelta(days=32)).replace(day=1)
            elif not self._day_matches(candidate):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
            elif candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
            elif candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
            else:
                return candidate
        raise ValueError(f"cron expression '{self.expression}' never fires")


class IntervalSchedule:
    def __init__(self, interval: timedelta) -> None:
        if interval <= timedelta(0):
            raise ValueError("interval must be positive")
        self.interval = interval

    def __str__(self) -> str:
        return f"every {int(self.interval.total_seconds())}s"

    def next_after(self, moment: datetime) -> datetime:
        return as_utc(moment) + self.interval


class IngestionScheduler:
    """Runs an ingestion job on a schedule, skipping overlapping ticks.

    Attributes:
        schedule: When ticks fire.
        is_running: True while a run started by this scheduler is in progress.
        last_run_at: Completion time of the last run that finished.
        runs_started: Ticks that started a run.
        runs_skipped: Ticks dropped because a run was in progress.
    """

    def __init__(
        self,
        job: Job,
        schedule: Schedule,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.schedule = schedule
        self._job = job
        self._clock = clock
        self._sleep = sleep
        self._stopped = asyncio.Event()
        self._runs: set[asyncio.Task] = set()
        self.is_running = False
        self.last_run_at: datetime | None = None
        self.runs_started = 0
        self.runs_skipped = 0

    @classmethod
    def from_config(cls, job: Job, config: GlobalConfig | None = None) -> "IngestionScheduler":
        """Scheduler for the configured interval, else the configured cron expression.

        An invalid cron expression is logged and replaced by ``DEFAULT_CRON``.
        """
        config = config or get_config()
        if config.ingestion_interval_sec:
            return cls(job, IntervalSchedule(timedelta(seconds=config.ingestion_interval_sec)))
        try:
            schedule = CronSchedule(config.ingestion_cron)
        except ValueError as exc:
            log.error(
                "Invalid cron expression, using default",
                cron=config.ingestion_cron,
                default=DEFAULT_CRON,
                error=str(exc),
            )
            schedule = CronSchedule(DEFAULT_CRON)
        return cls(job, schedule)

    @property
    def next_run(self) -> datetime:
        return self.schedule.next_after(self._clock())

    def status(self) -> dict[str, object]:
        return {
            "active": not self._stopped.is_set(),
            "schedule": str(self.schedule),
            "next_run": self.next_run.isoformat(),
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "is_running": self.is_running,
            "runs_started": self.runs_started,
            "runs_skipped": self.runs_skipped,
        }

    async def tick(self) -> IngestionRunReport | None:
        """Run the job once unless a previous run is still in progress.

        Returns:
            The run report, or None when the tick was skipped, the job
            produced no report, or the job raised.
        """
        if self.is_running:
            self.runs_skipped += 1
            log.warning("Skipping scheduled run, previous run still in progress")
            return None

        self.is_running = True
        self.runs_started += 1
        log.info("Scheduled run started", run_number=self.runs_started)
        try:
            report = await self._job()
        except Exception as exc:
            log.exception("Scheduled run failed, scheduler continues", error=str(exc))
            return None
        finally:
            self.is_running = False
            self.last_run_at = self._clock()

        if report is not None:
            log.info(
                "Scheduled run completed",
                run_id=report.run_id,
                sources_succeeded=report.sources_succeeded,
                sources_attempted=report.sources_attempted,
                evidence_created=report.evidence_created,
                evidence_skipped=report.evidence_skipped,
                duration_ms=report.duration_ms,
            )
        return report

    async def run(self, max_ticks: int | None = None) -> None:
        """Fire ticks until ``stop`` is called or ``max_ticks`` ticks have fired.

        Runs are started in the background so a slow run cannot delay the
        next tick; in-flight runs are awaited before returning.
        """
        log.info("Ingestion scheduler started", schedule=str(self.schedule), next_run=self.next_run)
        ticks = 0
        due: datetime | None = None
        try:
            while not self._stopped.is_set() and (max_ticks is None or ticks < max_ticks):
                now = self._clock()
                # an early wake-up must not fire the same slot twice
                due = self.schedule.next_after(now if due is None else max(now, due))
                await self._sleep(max((due - now).total_seconds(), 0.0))
                if self._stopped.is_set():
                    break
                ticks += 1
                task = asyncio.create_task(self.tick())
                self._runs.add(task)
                task.add_done_callback(self._runs.discard)
        finally:
            if self._runs:
                await asyncio.gather(*self._runs)
            log.info(
                "Ingestion scheduler stopped",
                runs_started=self.runs_started,
                runs_skipped=self.runs_skipped,
            )

    def stop(self) -> None:
        self._stopped.set()
