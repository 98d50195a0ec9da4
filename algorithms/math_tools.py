from typing import Iterable


class MathTools:
    """Provides essential mathematical utilities for goal and record calculations."""

    EPL_COEFF: float = 0.0333

    @staticmethod
    def clamp(value: float, min_value: float, max_value: float) -> float:
        """Clamp ``value`` to the inclusive range [min_value, max_value]."""
        if min_value > max_value:
            raise ValueError("min_value must not exceed max_value")
        return max(min_value, min(value, max_value))

    @classmethod
    def percentage(cls, part: float, whole: float) -> float:
        """Return ``part / whole`` as a percentage clamped to [0, 100]."""
        if whole == 0:
            raise ZeroDivisionError("whole must be non-zero")
        return cls.clamp(part / whole * 100.0, 0.0, 100.0)

    @classmethod
    def epley_1rm(cls, weight: float, reps: int, factor: float = 1.0) -> float:
        """Return the estimated one-rep max using the Epley formula."""
        if reps < 0:
            raise ValueError("reps must be non-negative")
        rep_term = min(reps, 8)
        return weight * (1 + cls.EPL_COEFF * rep_term) * factor

    @staticmethod
    def volume(sets: Iterable[tuple[int, float]]) -> float:
        """Compute training volume as the sum of reps times weight."""
        vol = 0.0
        for reps, weight in sets:
            vol += reps * weight
        return vol
