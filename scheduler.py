#!/usr/bin/env python3
"""
Ingestion run scheduler.

Runs the ingestion pipeline at fixed times of day taken from the `schedule`
section of feeds.yaml. Two forms are accepted:

    schedule:
      - "06:30"
      - time: "18:00"

    schedule:
      timezone: Europe/Lisbon
      times: ["06:30", "18:00"]

Times are interpreted in the schedule timezone (SCHEDULER_TIMEZONE, or the
`timezone` key of the mapping form); all internal arithmetic is in UTC.
"""

import asyncio
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from typing import Any, Dict, List, Optional

from config import config, get_logger
from telemetry import trace_span

# Module-specific logger
logger = get_logger("scheduler")

ERROR_RETRY_SECONDS = 60


class ScheduleEntry:
    """A single time of day at which a run starts."""

    def __init__(self, time_str: str):
        """
        Raises:
            ValueError: If time format is invalid
        """
        self.time_str = str(time_str).strip().strip('"\'')
        self.time = self._parse_time(self.time_str)

    def _parse_time(self, time_str: str) -> time:
        """Parse "HH:MM" or "H:MM" into a time object."""
        try:
            parts = time_str.split(':')
            if len(parts) != 2:
                raise ValueError(f"Time must be in HH:MM format, got: {time_str}")

            hour = int(parts[0])
            minute = int(parts[1])

            if not (0 <= hour <= 23):
                raise ValueError(f"Hour must be 0-23, got: {hour}")
            if not (0 <= minute <= 59):
                raise ValueError(f"Minute must be 0-59, got: {minute}")

            return time(hour=hour, minute=minute)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid time format '{time_str}': {e}")

    def next_occurrence(self, from_time: Optional[datetime] = None, tz=None) -> datetime:
        """Next occurrence strictly after `from_time`, returned in UTC."""
        if tz is None:
            tz = timezone.utc
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        ref_local = from_time.astimezone(tz)
        candidate_local = datetime.combine(ref_local.date(), self.time, tzinfo=tz)
        if candidate_local <= ref_local:
            candidate_local = candidate_local + timedelta(days=1)
        return candidate_local.astimezone(timezone.utc)

    def __repr__(self) -> str:
        return f"ScheduleEntry({self.time_str})"


def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


class FeedScheduler:
    """Sleeps until the next configured time, then runs the orchestrator."""

    def __init__(self, schedule: Any = None, timezone_name: Optional[str] = None):
        self.schedule_entries: List[ScheduleEntry] = []
        self.schedule_timezone_name = timezone_name or config.SCHEDULER_TIMEZONE or "UTC"
        self.schedule_timezone = _zone(self.schedule_timezone_name)
        if self.schedule_timezone is None:
            logger.warning(f"Invalid timezone '{self.schedule_timezone_name}', falling back to UTC")
            self.schedule_timezone_name = "UTC"
            self.schedule_timezone = timezone.utc
        self.runs_completed = 0
        self.runs_failed = 0
        self._load_schedule(schedule)

    def _load_schedule(self, schedule: Any) -> None:
        if isinstance(schedule, list):
            raw_entries = schedule
        elif isinstance(schedule, dict):
            tz_name = schedule.get('timezone')
            if tz_name:
                zone = _zone(str(tz_name))
                if zone is None:
                    logger.error(f"Invalid schedule timezone '{tz_name}', keeping '{self.schedule_timezone_name}'")
                else:
                    self.schedule_timezone = zone
                    self.schedule_timezone_name = str(tz_name)
            raw_entries = schedule.get('times') or []
            if not isinstance(raw_entries, list):
                logger.error("Schedule 'times' must be a list, ignoring")
                raw_entries = []
        else:
            raw_entries = []

        for entry in raw_entries:
            value = entry.get('time') if isinstance(entry, dict) else entry
            if not isinstance(value, str):
                logger.warning(f"Invalid schedule entry format: {entry}")
                continue
            try:
                self.schedule_entries.append(ScheduleEntry(value))
            except ValueError as e:
                logger.error(f"Failed to parse schedule entry {entry}: {e}")

        if self.schedule_entries:
            times_str = ", ".join(entry.time_str for entry in self.schedule_entries)
            logger.info(f"Scheduled times ({self.schedule_timezone_name}): {times_str}")

    def get_next_run_time(self, from_time: Optional[datetime] = None) -> Optional[datetime]:
        if not self.schedule_entries:
            return None
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        return min(entry.next_occurrence(from_time, self.schedule_timezone) for entry in self.schedule_entries)

    def seconds_until_next_run(self, from_time: Optional[datetime] = None) -> Optional[float]:
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        next_run = self.get_next_run_time(from_time)
        if next_run is None:
            return None
        return (next_run - from_time).total_seconds()

    def get_schedule_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        next_run = self.get_next_run_time(now)
        seconds_until = self.seconds_until_next_run(now)
        return {
            'current_time': now.isoformat(),
            'schedule_active': bool(self.schedule_entries),
            'schedule_times': [entry.time_str for entry in self.schedule_entries],
            'schedule_timezone': self.schedule_timezone_name,
            'next_run_time': next_run.isoformat() if next_run else None,
            'seconds_until_next_run': seconds_until,
            'minutes_until_next_run': round(seconds_until / 60, 1) if seconds_until is not None else None,
            'runs_completed': self.runs_completed,
            'runs_failed': self.runs_failed,
        }

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run_scheduled_pipeline(self, orchestrator, max_runs: Optional[int] = None) -> None:
        """Run `orchestrator.run_once()` at every scheduled time.

        Stops when cancelled, or after `max_runs` scheduled runs when given.
        """
        if not self.schedule_entries:
            logger.error("No schedule configured - cannot run in scheduled mode")
            return

        logger.info(f"Starting scheduled ingestion with {len(self.schedule_entries)} daily runs")

        if config.SCHEDULER_RUN_IMMEDIATELY:
            logger.info("Running ingestion immediately on startup (SCHEDULER_RUN_IMMEDIATELY=true)")
            await self._run_once(orchestrator)

        runs = 0
        while max_runs is None or runs < max_runs:
            try:
                next_time = self.get_next_run_time()
                seconds_until = (next_time - datetime.now(timezone.utc)).total_seconds()
                sleep_time = max(1, seconds_until + 1)
                logger.info(f"Sleeping {sleep_time / 60:.1f} minutes until next run at {next_time.isoformat()}")
                await self._sleep_until(next_time, sleep_time)

                logger.info("Starting scheduled ingestion run")
                await self._run_once(orchestrator)
                runs += 1
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled - shutting down")
                break
            except Exception as e:
                logger.error(f"Error in scheduled ingestion run: {e}")
                await asyncio.sleep(ERROR_RETRY_SECONDS)

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, next_time, sleep_time: {
            "sleep.seconds": float(sleep_time),
            "scheduled.at": next_time.isoformat(),
        },
    )
    async def _sleep_until(self, next_time: datetime, sleep_time: float) -> None:
        await asyncio.sleep(sleep_time)

    @trace_span("scheduler.pipeline_run", tracer_name="scheduler")
    async def _run_once(self, orchestrator) -> Optional[Dict[str, Any]]:
        started = datetime.now(timezone.utc)
        try:
            summary = await orchestrator.run_once()
        except Exception as e:
            self.runs_failed += 1
            duration = (datetime.now(timezone.utc) - started).total_seconds()
            logger.error(f"Ingestion run failed after {duration:.1f}s: {e}")
            return None
        self.runs_completed += 1
        duration = (datetime.now(timezone.utc) - started).total_seconds()
        totals = summary.get('totals', {}) if isinstance(summary, dict) else {}
        logger.info(
            f"Ingestion run completed in {duration:.1f}s: "
            f"{totals.get('feeds_succeeded', 0)}/{totals.get('feeds_total', 0)} feeds, "
            f"{totals.get('articles_stored', 0)} articles stored"
        )
        return summary
