import datetime
import logging
from typing import Optional

from db import (
    AsyncBodyMetricRepository,
    AsyncGoalRepository,
    AsyncPersonalRecordRepository,
    AsyncWorkoutCompletionRepository,
)
from models import (
    GOAL_STATUSES,
    GOAL_TYPES,
    BodyFatTarget,
    FrequencyTarget,
    Goal,
    GoalTarget,
    StrengthTarget,
    WeightTarget,
    CustomTarget,
    utcnow,
)
from algorithms.goal_progress import MetricHistory, compute_progress, frequency_window

logger = logging.getLogger(__name__)


class GoalTransitionError(ValueError):
    """Raised when a goal is asked to leave a terminal status."""


TRANSITIONS: dict[str, frozenset[str]] = {
    "active": frozenset({"completed", "abandoned", "expired"}),
    "completed": frozenset(),
    "abandoned": frozenset(),
    "expired": frozenset(),
}


class GoalService:
    """Goal lifecycle transitions and progress refresh."""

    def __init__(
        self,
        goal_repo: AsyncGoalRepository,
        metric_repo: AsyncBodyMetricRepository,
        record_repo: AsyncPersonalRecordRepository,
        completion_repo: AsyncWorkoutCompletionRepository,
    ) -> None:
        self.goals = goal_repo
        self.metrics = metric_repo
        self.records = record_repo
        self.completions = completion_repo

    async def create_goal(
        self,
        user_id: str,
        title: str,
        target: GoalTarget,
        deadline: datetime.datetime,
        *,
        description: str | None = None,
        start_value: float | None = None,
    ) -> Goal:
        """Create an active goal.

        Weight and body fat goals without an explicit ``start_value`` are
        seeded from the user's latest body metric, when one exists.
        """
        if start_value is None and isinstance(target, (WeightTarget, BodyFatTarget)):
            recent = await self.metrics.fetch_recent(user_id, limit=1)
            if recent:
                field = "weight" if isinstance(target, WeightTarget) else "body_fat"
                start_value = getattr(recent[0], field)
        gid = await self.goals.add(
            user_id,
            title,
            target,
            deadline,
            description=description,
            start_value=start_value,
        )
        return await self.goals.fetch(gid)

    async def get_goal(self, goal_id: int) -> Goal:
        return await self.goals.fetch(goal_id)

    async def list_goals(
        self, user_id: str, goal_type: str | None = None, status: str | None = None
    ) -> list[Goal]:
        if goal_type is not None and goal_type not in GOAL_TYPES:
            raise ValueError(f"unknown goal type: {goal_type}")
        if status is not None and status not in GOAL_STATUSES:
            raise ValueError(f"unknown goal status: {status}")
        return await self.goals.fetch_for_user(user_id, goal_type, status)

    async def update_goal(
        self,
        goal_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        target: GoalTarget | None = None,
        deadline: datetime.datetime | None = None,
        current_value: float | None = None,
        current_progress: float | None = None,
    ) -> Goal:
        """Apply owner edits, including hand-entered progress.

        Custom goals only ever move through ``current_value`` and
        ``current_progress`` given here; no calculator touches them.
        """
        if current_progress is not None and not 0 <= current_progress <= 100:
            raise ValueError("current_progress must be between 0 and 100")
        goal = await self.goals.update(
            goal_id,
            title=title,
            description=description,
            target=target,
            deadline=deadline,
        )
        if current_value is not None or current_progress is not None:
            logger.info("goal %s: manual progress update", goal_id)
            goal = await self.goals.update_progress(
                goal_id, current_value, current_progress
            )
        return goal

    async def delete_goal(self, goal_id: int) -> None:
        await self.goals.delete(goal_id)

    async def _transition(
        self, goal_id: int, status: str, now: Optional[datetime.datetime] = None
    ) -> Goal:
        goal = await self.goals.fetch(goal_id)
        if goal.status == status:
            return goal
        if status not in TRANSITIONS[goal.status]:
            raise GoalTransitionError(
                f"cannot move goal {goal_id} from {goal.status} to {status}"
            )
        logger.info("goal %s: %s -> %s", goal_id, goal.status, status)
        return await self.goals.update(goal_id, status=status, completed_at=now)

    async def complete_goal(
        self, goal_id: int, now: Optional[datetime.datetime] = None
    ) -> Goal:
        """Mark a goal completed; an already completed goal keeps its timestamp."""
        return await self._transition(goal_id, "completed", now or utcnow())

    async def abandon_goal(self, goal_id: int) -> Goal:
        return await self._transition(goal_id, "abandoned")

    async def expire_if_due(
        self, goal: Goal, now: Optional[datetime.datetime] = None
    ) -> bool:
        """Expire ``goal`` when it is active and its deadline has passed."""
        current = now or utcnow()
        if goal.status != "active" or not goal.deadline < current:
            return False
        updated = await self._transition(goal.id, "expired")
        return updated.status == "expired"

    async def check_expired_goals(
        self, user_id: str, now: Optional[datetime.datetime] = None
    ) -> list[Goal]:
        current = now or utcnow()
        expired = []
        for goal in await self.goals.fetch_for_user(user_id, status="active"):
            if await self.expire_if_due(goal, current):
                expired.append(await self.goals.fetch(goal.id))
        return expired

    async def load_history(
        self, goal: Goal, now: Optional[datetime.datetime] = None
    ) -> MetricHistory:
        """Fetch only the metric history the goal's type needs."""
        target = goal.target
        if isinstance(target, (WeightTarget, BodyFatTarget)):
            return MetricHistory(
                body_metrics=await self.metrics.fetch_recent(goal.user_id, limit=1)
            )
        if isinstance(target, StrengthTarget):
            return MetricHistory(
                personal_record=await self.records.fetch_for_exercise(
                    goal.user_id, target.exercise_id
                )
            )
        if isinstance(target, FrequencyTarget):
            window = frequency_window(target)
            if window is None:
                return MetricHistory()
            end = now or utcnow()
            count = await self.completions.count_between(
                goal.user_id, end - window[0], end
            )
            return MetricHistory(workout_count=count)
        if isinstance(target, CustomTarget):
            return MetricHistory()
        raise TypeError(f"unsupported goal target: {target!r}")

    async def apply_progress(
        self, goal: Goal, now: Optional[datetime.datetime] = None
    ) -> tuple[Goal, bool]:
        """Compute and persist progress for ``goal``.

        Returns the stored goal and whether anything was written.
        """
        current = now or utcnow()
        update = compute_progress(goal, await self.load_history(goal, current))
        if update.is_empty:
            return goal, False
        stored = await self.goals.update_progress(
            goal.id, update.current_value, update.current_progress
        )
        if update.completion_detected:
            stored = await self.complete_goal(goal.id, current)
        return stored, True

    async def refresh_progress(
        self, goal_id: int, now: Optional[datetime.datetime] = None
    ) -> Goal:
        goal = await self.goals.fetch(goal_id)
        if goal.status != "active":
            return goal
        stored, _ = await self.apply_progress(goal, now)
        return stored

    async def goal_statistics(self, user_id: str) -> dict:
        goals = await self.goals.fetch_for_user(user_id)
        by_status = {s: 0 for s in TRANSITIONS}
        by_type = {t: 0 for t in GOAL_TYPES}
        for g in goals:
            by_status[g.status] = by_status.get(g.status, 0) + 1
            by_type[g.type] = by_type.get(g.type, 0) + 1
        durations = [
            (g.completed_at - g.start_date).total_seconds() / 86400
            for g in goals
            if g.status == "completed" and g.completed_at is not None
        ]
        avg_days = sum(durations) / len(durations) if durations else 0
        total = len(goals)
        return {
            "total_goals": total,
            "active_goals": by_status["active"],
            "completed_goals": by_status["completed"],
            "abandoned_goals": by_status["abandoned"],
            "expired_goals": by_status["expired"],
            "completion_rate": by_status["completed"] / total * 100 if total else 0.0,
            "average_days_to_complete": round(avg_days),
            "goals_by_type": by_type,
        }
