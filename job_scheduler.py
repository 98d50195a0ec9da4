import asyncio
import datetime
import logging
from typing import Iterable, Mapping, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from db import (
    AsyncBodyMetricRepository,
    AsyncGoalRepository,
    AsyncJobLogRepository,
    AsyncPersonalRecordRepository,
    AsyncWorkoutCompletionRepository,
)
from goal_service import GoalService
from maintenance_jobs import (
    CLEANUP_OLD_LOGS,
    EXPIRE_GOALS,
    UPDATE_GOAL_PROGRESS,
    CleanupOldLogsJob,
    ExpireGoalsJob,
    MaintenanceJob,
    UpdateGoalProgressJob,
)
from models import JobDefinition, JobLog, JobResult, to_iso, utcnow
from settings_schema import SettingsSchema

logger = logging.getLogger(__name__)

DEFAULT_JOBS: tuple[JobDefinition, ...] = (
    JobDefinition(EXPIRE_GOALS, "0 0 * * *", "Check and expire outdated goals"),
    JobDefinition(UPDATE_GOAL_PROGRESS, "0 */6 * * *", "Update progress for all active goals"),
    JobDefinition(CLEANUP_OLD_LOGS, "0 2 * * 0", "Clean up job logs older than 90 days"),
)


class JobScheduler:
    """Run maintenance jobs on cron triggers inside the running event loop.

    Every scheduled job owns one trigger task that sleeps until the next cron
    slot and then spawns the run as a separate task, so stopping a trigger
    never interrupts a run already in progress. Runs started by a trigger and
    runs requested through :meth:`execute_job` share one code path and are
    not mutually exclusive.
    """

    def __init__(
        self,
        jobs: Iterable[JobDefinition],
        units: Mapping[str, MaintenanceJob],
        log_repo: AsyncJobLogRepository,
        timezone: str = "UTC",
    ) -> None:
        self.jobs = tuple(jobs)
        self._definitions: dict[str, JobDefinition] = {}
        for job in self.jobs:
            if job.name in self._definitions:
                raise ValueError(f"duplicate job name: {job.name}")
            if not croniter.is_valid(job.schedule):
                raise ValueError(f"invalid schedule for {job.name}: {job.schedule}")
            self._definitions[job.name] = job
        self.units = dict(units)
        self.logs = log_repo
        self.tz = ZoneInfo(timezone)
        self._triggers: dict[str, asyncio.Task] = {}
        self._runs: set[asyncio.Task] = set()

    def start_all(self) -> int:
        """Schedule every enabled job that is not already scheduled."""
        for job in self.jobs:
            if job.enabled and job.name not in self._triggers:
                self._schedule(job)
        logger.info("job scheduler started with %d active jobs", len(self._triggers))
        for job in self.jobs:
            state = "active" if job.name in self._triggers else "inactive"
            logger.info("  %s - %s (%s): %s", state, job.name, job.schedule, job.description)
        return len(self._triggers)

    def stop_all(self) -> None:
        for name, task in list(self._triggers.items()):
            task.cancel()
            logger.info("stopped job: %s", name)
        self._triggers.clear()

    def start_job(self, name: str) -> bool:
        job = self._definitions.get(name)
        if job is None or name in self._triggers:
            return False
        self._schedule(job)
        return True

    def stop_job(self, name: str) -> bool:
        task = self._triggers.pop(name, None)
        if task is None:
            return False
        task.cancel()
        logger.info("stopped job: %s", name)
        return True

    def is_scheduled(self, name: str) -> bool:
        return name in self._triggers

    def _schedule(self, job: JobDefinition) -> None:
        loop = asyncio.get_running_loop()
        self._triggers[job.name] = loop.create_task(
            self._trigger_loop(job), name=f"trigger:{job.name}"
        )
        logger.info("scheduled job: %s (%s)", job.name, job.schedule)

    async def _trigger_loop(self, job: JobDefinition) -> None:
        last_fire: Optional[datetime.datetime] = None
        while True:
            now = utcnow()
            base = now if last_fire is None else max(now, last_fire)
            fire_at = self.next_run_time(job.schedule, base)
            await asyncio.sleep(max(0.0, (fire_at - utcnow()).total_seconds()))
            last_fire = fire_at
            run = asyncio.create_task(self.execute_job(job.name), name=f"run:{job.name}")
            self._runs.add(run)
            run.add_done_callback(self._runs.discard)

    async def execute_job(self, name: str) -> JobResult:
        """Run one job to completion and record exactly one audit entry."""
        logger.info("executing job: %s", name)
        unit = self.units.get(name)
        if unit is None:
            now = utcnow()
            result = JobResult(
                job_name=name,
                status="failure",
                start_time=now,
                end_time=now,
                duration=0,
                items_processed=0,
                message=f"Unknown job: {name}",
                error="Job not found",
            )
        else:
            result = await unit.execute()
        try:
            await self.logs.append(result)
        except Exception:
            logger.exception("could not record result of job %s", name)
        return result

    def next_run_time(
        self, schedule: str, now: Optional[datetime.datetime] = None
    ) -> datetime.datetime:
        base = (now or utcnow()).astimezone(self.tz)
        return croniter(schedule, base).get_next(datetime.datetime)

    def get_job_configs(self, now: Optional[datetime.datetime] = None) -> list[dict]:
        """Return job definitions with their trigger state and next fire time.

        ``next_run`` is reported for every enabled or scheduled job. ``last_run``
        is never filled in here; read the audit log for that.
        """
        configs = []
        for job in self.jobs:
            scheduled = job.name in self._triggers
            configs.append(
                {
                    "name": job.name,
                    "schedule": job.schedule,
                    "enabled": job.enabled,
                    "description": job.description,
                    "scheduled": scheduled,
                    "last_run": None,
                    "next_run": to_iso(self.next_run_time(job.schedule, now))
                    if scheduled or job.enabled
                    else None,
                }
            )
        return configs


class JobControl:
    """Administrative surface over the scheduler and its audit log."""

    def __init__(self, scheduler: JobScheduler) -> None:
        self.scheduler = scheduler

    def list_jobs(self) -> list[dict]:
        return self.scheduler.get_job_configs()

    async def trigger(self, name: str) -> JobResult:
        return await self.scheduler.execute_job(name)

    def stop(self, name: str) -> bool:
        return self.scheduler.stop_job(name)

    def start(self, name: str) -> bool:
        return self.scheduler.start_job(name)

    async def recent_logs(self, limit: int = 50) -> list[JobLog]:
        return await self.scheduler.logs.recent(limit)

    async def logs_for_job(self, name: str, limit: int = 20) -> list[JobLog]:
        return await self.scheduler.logs.for_job(name, limit)


def job_definitions(settings: SettingsSchema) -> tuple[JobDefinition, ...]:
    """Apply per-job schedule and enablement overrides to the defaults."""
    return tuple(
        JobDefinition(
            name=job.name,
            schedule=settings.job_schedules.get(job.name, job.schedule),
            description=job.description,
            enabled=settings.jobs_enabled.get(job.name, job.enabled),
        )
        for job in DEFAULT_JOBS
    )


def build_scheduler(
    db_path: str,
    settings: SettingsSchema,
    goal_service: GoalService | None = None,
) -> JobScheduler:
    goals = AsyncGoalRepository(db_path)
    logs = AsyncJobLogRepository(db_path)
    if goal_service is None:
        goal_service = GoalService(
            goals,
            AsyncBodyMetricRepository(db_path),
            AsyncPersonalRecordRepository(db_path),
            AsyncWorkoutCompletionRepository(db_path),
        )
    units: dict[str, MaintenanceJob] = {
        EXPIRE_GOALS: ExpireGoalsJob(goals, goal_service),
        UPDATE_GOAL_PROGRESS: UpdateGoalProgressJob(goals, goal_service),
        CLEANUP_OLD_LOGS: CleanupOldLogsJob(
            logs, settings.log_retention_days, settings.cleanup_batch_size
        ),
    }
    return JobScheduler(job_definitions(settings), units, logs, settings.timezone)
