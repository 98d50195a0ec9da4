from typing import Optional, Sequence


def representative_performance(
    actual_weight: Sequence[float], actual_reps: Sequence[int]
) -> Optional[tuple[float, int]]:
    """Return the ``(weight, reps)`` pair at the heaviest set.

    Ties on weight resolve to the first set index carrying that weight. The
    pair only qualifies as a record candidate when both weight and reps are
    positive; otherwise ``None`` is returned.
    """
    if not actual_weight:
        return None
    max_weight = max(actual_weight)
    idx = list(actual_weight).index(max_weight)
    if idx >= len(actual_reps):
        return None
    reps = actual_reps[idx]
    if max_weight > 0 and reps > 0:
        return float(max_weight), int(reps)
    return None


def supersedes(candidate: tuple[float, int], existing: tuple[float, int]) -> bool:
    """Weight dominates; reps only break a tie at equal weight."""
    weight, reps = candidate
    best_weight, best_reps = existing
    return weight > best_weight or (weight == best_weight and reps > best_reps)
