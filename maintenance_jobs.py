"""Units of work run by the job scheduler.

Each job records its own timing and turns a failure of its top level
operation into a ``failure`` result. Sweeps over many goals skip individual
goals that fail so one bad record cannot blank out a whole run.
"""

import datetime
import logging
import time

from db import AsyncGoalRepository, AsyncJobLogRepository
from goal_service import GoalService
from models import CustomTarget, JobResult, utcnow

logger = logging.getLogger(__name__)

EXPIRE_GOALS = "expire-goals"
UPDATE_GOAL_PROGRESS = "update-goal-progress"
CLEANUP_OLD_LOGS = "cleanup-old-logs"


class MaintenanceJob:
    """Base class handling timing and failure reporting."""

    name = ""

    async def run(self) -> tuple[int, str]:
        """Do the work and return ``(items_processed, message)``."""
        raise NotImplementedError

    async def execute(self) -> JobResult:
        start_time = utcnow()
        started = time.monotonic()
        logger.info("[%s] starting job execution", self.name, extra={"job_name": self.name})
        try:
            items, message = await self.run()
        except Exception as exc:
            duration = int((time.monotonic() - started) * 1000)
            logger.exception(
                "[%s] failed after %dms",
                self.name,
                duration,
                extra={"job_name": self.name, "job_duration_ms": duration},
            )
            return JobResult(
                job_name=self.name,
                status="failure",
                start_time=start_time,
                end_time=utcnow(),
                duration=duration,
                items_processed=0,
                message="Job failed",
                error=str(exc) or exc.__class__.__name__,
            )
        duration = int((time.monotonic() - started) * 1000)
        logger.info(
            "[%s] completed: %s in %dms",
            self.name,
            message,
            duration,
            extra={
                "job_name": self.name,
                "job_duration_ms": duration,
                "job_items_processed": items,
            },
        )
        return JobResult(
            job_name=self.name,
            status="success",
            start_time=start_time,
            end_time=utcnow(),
            duration=duration,
            items_processed=items,
            message=message,
        )


class ExpireGoalsJob(MaintenanceJob):
    """Move active goals whose deadline has passed to ``expired``."""

    name = EXPIRE_GOALS

    def __init__(self, goal_repo: AsyncGoalRepository, goal_service: GoalService) -> None:
        self.goals = goal_repo
        self.service = goal_service

    async def run(self) -> tuple[int, str]:
        active = await self.goals.find_active_goals()
        now = utcnow()
        expired = 0
        for goal in active:
            try:
                if await self.service.expire_if_due(goal, now):
                    expired += 1
            except Exception:
                logger.exception(
                    "[%s] error expiring goal %s", self.name, goal.id, extra={"goal_id": goal.id}
                )
        return expired, f"Successfully expired {expired} goals"


class UpdateGoalProgressJob(MaintenanceJob):
    """Recompute progress for every active goal."""

    name = UPDATE_GOAL_PROGRESS

    def __init__(self, goal_repo: AsyncGoalRepository, goal_service: GoalService) -> None:
        self.goals = goal_repo
        self.service = goal_service

    async def run(self) -> tuple[int, str]:
        active = await self.goals.find_active_goals()
        now = utcnow()
        updated = 0
        for goal in active:
            if isinstance(goal.target, CustomTarget):
                continue
            try:
                await self.service.apply_progress(goal, now)
                updated += 1
            except Exception:
                logger.exception(
                    "[%s] error updating goal %s", self.name, goal.id, extra={"goal_id": goal.id}
                )
        return updated, f"Successfully updated progress for {updated} goals"


class CleanupOldLogsJob(MaintenanceJob):
    """Delete job audit entries past the retention window."""

    name = CLEANUP_OLD_LOGS

    def __init__(
        self,
        log_repo: AsyncJobLogRepository,
        retention_days: int = 90,
        batch_size: int = 500,
    ) -> None:
        self.logs = log_repo
        self.retention_days = retention_days
        self.batch_size = batch_size

    async def run(self) -> tuple[int, str]:
        cutoff = utcnow() - datetime.timedelta(days=self.retention_days)
        deleted = await self.logs.delete_older_than(cutoff, self.batch_size)
        return deleted, f"Successfully deleted {deleted} old logs"
