"""Goal progress calculation.

Everything here is a pure function of its inputs. Callers load the metric
history a goal needs, call :func:`compute_progress` and persist the returned
:class:`ProgressUpdate` themselves.
"""

import datetime
from dataclasses import dataclass
from typing import Optional, Sequence

from models import (
    BodyFatTarget,
    BodyMetric,
    CustomTarget,
    FrequencyTarget,
    Goal,
    PersonalRecord,
    StrengthTarget,
    WeightTarget,
)
from .math_tools import MathTools

WEEK_WINDOW = datetime.timedelta(days=7)
MONTH_WINDOW = datetime.timedelta(days=30)


@dataclass(frozen=True)
class MetricHistory:
    """Inputs a progress computation may draw from.

    ``body_metrics`` is ordered most recent first. ``workout_count`` is the
    number of completions inside the goal's frequency window.
    """

    body_metrics: Sequence[BodyMetric] = ()
    personal_record: Optional[PersonalRecord] = None
    workout_count: Optional[int] = None


@dataclass(frozen=True)
class ProgressUpdate:
    current_value: Optional[float] = None
    current_progress: Optional[float] = None
    completion_detected: bool = False

    @property
    def is_empty(self) -> bool:
        return self.current_value is None and self.current_progress is None


NO_UPDATE = ProgressUpdate()


def frequency_window(target: FrequencyTarget) -> Optional[tuple[datetime.timedelta, int]]:
    """Return the trailing window and workout target for a frequency goal."""
    if target.workouts_per_week is not None:
        return WEEK_WINDOW, target.workouts_per_week
    if target.workouts_per_month is not None:
        return MONTH_WINDOW, target.workouts_per_month
    return None


def linear_progress(
    current: float, start: Optional[float], target: Optional[float]
) -> Optional[float]:
    """Percent of the way from ``start`` to ``target``.

    Works for both decreasing and increasing goals since numerator and
    denominator share a sign. Returns ``None`` when either bound is missing or
    when ``target == start``.
    """
    if start is None or target is None:
        return None
    total_change = target - start
    if total_change == 0:
        return None
    return MathTools.clamp((current - start) / total_change * 100.0, 0.0, 100.0)


def _body_progress(
    goal: Goal, latest: Optional[BodyMetric], target: Optional[float], field: str
) -> ProgressUpdate:
    if latest is None:
        return NO_UPDATE
    current = getattr(latest, field)
    if current is None:
        return NO_UPDATE
    return ProgressUpdate(
        current_value=float(current),
        current_progress=linear_progress(float(current), goal.start_value, target),
    )


def _strength_progress(
    target: StrengthTarget, record: Optional[PersonalRecord]
) -> ProgressUpdate:
    if record is None or target.target_weight <= 0:
        return NO_UPDATE
    if record.weight >= target.target_weight and record.reps >= target.target_reps:
        return ProgressUpdate(current_progress=100.0, completion_detected=True)
    # reps only matter for the completion test above
    return ProgressUpdate(
        current_progress=MathTools.percentage(record.weight, target.target_weight)
    )


def _frequency_progress(target: FrequencyTarget, workout_count: Optional[int]) -> ProgressUpdate:
    window = frequency_window(target)
    if window is None or workout_count is None:
        return NO_UPDATE
    _, per_window = window
    if per_window <= 0:
        return NO_UPDATE
    return ProgressUpdate(current_progress=MathTools.percentage(workout_count, per_window))


def compute_progress(goal: Goal, history: MetricHistory) -> ProgressUpdate:
    """Derive the current value and progress percentage for ``goal``."""
    latest = history.body_metrics[0] if history.body_metrics else None
    match goal.target:
        case WeightTarget(target_weight=target):
            return _body_progress(goal, latest, target, "weight")
        case BodyFatTarget(target_body_fat=target):
            return _body_progress(goal, latest, target, "body_fat")
        case StrengthTarget():
            return _strength_progress(goal.target, history.personal_record)
        case FrequencyTarget():
            return _frequency_progress(goal.target, history.workout_count)
        case CustomTarget():
            return NO_UPDATE
        case _:
            raise TypeError(f"unsupported goal target: {goal.target!r}")
