from __future__ import annotations

import datetime
from dataclasses import dataclass, field, asdict
from typing import Optional, Union


GOAL_TYPES = ("weight", "body_fat", "strength", "workout_frequency", "custom")
GOAL_STATUSES = ("active", "completed", "abandoned", "expired")


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def to_iso(value: Optional[datetime.datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime.datetime]:
    """Parse a stored timestamp, treating naive values as UTC."""
    if value is None:
        return None
    parsed = datetime.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


@dataclass(frozen=True)
class WeightTarget:
    target_weight: Optional[float] = None


@dataclass(frozen=True)
class BodyFatTarget:
    target_body_fat: Optional[float] = None


@dataclass(frozen=True)
class StrengthTarget:
    exercise_id: str
    target_weight: float
    target_reps: int
    exercise_name: str = ""


@dataclass(frozen=True)
class FrequencyTarget:
    workouts_per_week: Optional[int] = None
    workouts_per_month: Optional[int] = None


@dataclass(frozen=True)
class CustomTarget:
    text: str = ""


GoalTarget = Union[WeightTarget, BodyFatTarget, StrengthTarget, FrequencyTarget, CustomTarget]

_TARGET_TYPES: dict[str, type] = {
    "weight": WeightTarget,
    "body_fat": BodyFatTarget,
    "strength": StrengthTarget,
    "workout_frequency": FrequencyTarget,
    "custom": CustomTarget,
}


def target_from_dict(goal_type: str, data: Optional[dict]) -> GoalTarget:
    """Build the target variant matching ``goal_type`` from a plain mapping."""
    try:
        cls = _TARGET_TYPES[goal_type]
    except KeyError:
        raise ValueError(f"unknown goal type: {goal_type}")
    return cls(**(data or {}))


def target_type(target: GoalTarget) -> str:
    for name, cls in _TARGET_TYPES.items():
        if isinstance(target, cls):
            return name
    raise TypeError(f"unsupported goal target: {target!r}")


@dataclass
class Goal:
    id: int
    user_id: str
    type: str
    title: str
    target: GoalTarget
    start_date: datetime.datetime
    deadline: datetime.datetime
    status: str = "active"
    description: Optional[str] = None
    start_value: Optional[float] = None
    current_value: Optional[float] = None
    current_progress: Optional[float] = None
    completed_at: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "target": asdict(self.target),
            "start_value": self.start_value,
            "current_value": self.current_value,
            "current_progress": self.current_progress,
            "start_date": to_iso(self.start_date),
            "deadline": to_iso(self.deadline),
            "completed_at": to_iso(self.completed_at),
            "status": self.status,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


@dataclass
class BodyMetric:
    id: int
    user_id: str
    date: datetime.datetime
    weight: Optional[float] = None
    body_fat: Optional[float] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "date": to_iso(self.date),
            "weight": self.weight,
            "body_fat": self.body_fat,
            "notes": self.notes,
        }


@dataclass
class PersonalRecord:
    id: int
    user_id: str
    exercise_id: str
    exercise_name: str
    weight: float
    reps: int
    achieved_at: datetime.datetime
    workout_completion_id: Optional[int] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "exercise_id": self.exercise_id,
            "exercise_name": self.exercise_name,
            "weight": self.weight,
            "reps": self.reps,
            "achieved_at": to_iso(self.achieved_at),
            "workout_completion_id": self.workout_completion_id,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


@dataclass
class ExercisePerformance:
    exercise_id: str
    actual_reps: list[int]
    actual_weight: list[float]
    exercise_name: Optional[str] = None
    planned_sets: int = 0
    completed_sets: int = 0
    planned_reps: int = 0
    planned_weight: Optional[float] = None
    notes: Optional[str] = None


@dataclass
class WorkoutCompletion:
    id: int
    user_id: str
    workout_id: str
    completed_at: datetime.datetime
    duration: int
    exercises: list[ExercisePerformance] = field(default_factory=list)
    workout_name: Optional[str] = None
    notes: Optional[str] = None
    rating: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "workout_id": self.workout_id,
            "workout_name": self.workout_name,
            "completed_at": to_iso(self.completed_at),
            "duration": self.duration,
            "exercises": [asdict(e) for e in self.exercises],
            "notes": self.notes,
            "rating": self.rating,
        }


@dataclass(frozen=True)
class JobDefinition:
    name: str
    schedule: str
    description: str
    enabled: bool = True


@dataclass(frozen=True)
class JobResult:
    job_name: str
    status: str
    start_time: datetime.datetime
    end_time: Optional[datetime.datetime] = None
    duration: int = 0
    items_processed: int = 0
    message: str = ""
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "job_name": self.job_name,
            "status": self.status,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "duration": self.duration,
            "items_processed": self.items_processed,
            "message": self.message,
            "error": self.error,
        }


@dataclass(frozen=True)
class JobLog:
    id: int
    job_name: str
    status: str
    start_time: datetime.datetime
    end_time: datetime.datetime
    duration: int
    items_processed: int
    message: str
    created_at: datetime.datetime
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_name": self.job_name,
            "status": self.status,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "duration": self.duration,
            "items_processed": self.items_processed,
            "message": self.message,
            "error": self.error,
            "created_at": to_iso(self.created_at),
        }
