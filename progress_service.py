import datetime
import logging
from typing import Iterable, Optional

from db import (
    AsyncBodyMetricRepository,
    AsyncPersonalRecordRepository,
    AsyncWorkoutCompletionRepository,
)
from models import BodyMetric, ExercisePerformance, PersonalRecord, WorkoutCompletion
from algorithms.math_tools import MathTools
from algorithms.personal_records import representative_performance

logger = logging.getLogger(__name__)


class ProgressService:
    """Record workout completions, body metrics and personal records."""

    def __init__(
        self,
        completion_repo: AsyncWorkoutCompletionRepository,
        record_repo: AsyncPersonalRecordRepository,
        metric_repo: AsyncBodyMetricRepository,
    ) -> None:
        self.completions = completion_repo
        self.records = record_repo
        self.metrics = metric_repo

    async def complete_workout(
        self,
        user_id: str,
        workout_id: str,
        duration: int,
        exercises: Iterable[ExercisePerformance],
        *,
        workout_name: str | None = None,
        notes: str | None = None,
        rating: int | None = None,
        completed_at: datetime.datetime | None = None,
    ) -> tuple[WorkoutCompletion, list[PersonalRecord]]:
        """Store a completed workout and return any records it set.

        Each exercise is judged on its own heaviest set. Only records that
        were created or superseded by this workout are returned.
        """
        completion = await self.completions.add(
            user_id,
            workout_id,
            duration,
            exercises,
            workout_name=workout_name,
            notes=notes,
            rating=rating,
            completed_at=completed_at,
        )
        new_records: list[PersonalRecord] = []
        for ex in completion.exercises:
            candidate = representative_performance(ex.actual_weight, ex.actual_reps)
            if candidate is None:
                continue
            weight, reps = candidate
            record, is_new = await self.records.upsert(
                user_id,
                ex.exercise_id,
                ex.exercise_name or "Unknown Exercise",
                weight,
                reps,
                completion.id,
                achieved_at=completion.completed_at,
            )
            if is_new:
                new_records.append(record)
        if new_records:
            logger.info(
                "workout %s for user %s set %d personal records",
                workout_id,
                user_id,
                len(new_records),
            )
        return completion, new_records

    async def log_body_metric(
        self,
        user_id: str,
        *,
        weight: float | None = None,
        body_fat: float | None = None,
        date: datetime.datetime | None = None,
        notes: str | None = None,
    ) -> BodyMetric:
        return await self.metrics.add(
            user_id, weight=weight, body_fat=body_fat, date=date, notes=notes
        )

    async def personal_records(self, user_id: str) -> list[PersonalRecord]:
        return await self.records.fetch_for_user(user_id)

    async def exercise_progress(self, user_id: str, exercise_id: str) -> dict:
        """Summarize every completion that contains ``exercise_id``."""
        completions = await self.completions.fetch_between(user_id)
        entries: list[tuple[datetime.datetime, ExercisePerformance]] = []
        for c in reversed(completions):
            for ex in c.exercises:
                if ex.exercise_id == exercise_id:
                    entries.append((c.completed_at, ex))
                    break
        if not entries:
            raise ValueError(f"no progress data found for exercise {exercise_id}")

        record: Optional[PersonalRecord] = await self.records.fetch_for_exercise(
            user_id, exercise_id
        )
        progress_data = []
        for when, ex in entries:
            max_weight = max(ex.actual_weight) if ex.actual_weight else 0.0
            avg_reps = sum(ex.actual_reps) / len(ex.actual_reps) if ex.actual_reps else 0.0
            progress_data.append(
                {
                    "date": when.isoformat(),
                    "weight": max_weight,
                    "reps": round(avg_reps),
                    "volume": MathTools.volume(zip(ex.actual_reps, ex.actual_weight)),
                }
            )
        return {
            "exercise_id": exercise_id,
            "exercise_name": entries[0][1].exercise_name or "Unknown Exercise",
            "total_workouts": len(entries),
            "first_recorded": entries[0][0].isoformat(),
            "last_recorded": entries[-1][0].isoformat(),
            "personal_record": (
                {
                    "weight": record.weight,
                    "reps": record.reps,
                    "achieved_at": record.achieved_at.isoformat(),
                    "est_1rm": round(MathTools.epley_1rm(record.weight, record.reps), 2),
                }
                if record
                else None
            ),
            "progress_data": progress_data,
        }
