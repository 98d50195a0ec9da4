from .math_tools import MathTools
from .goal_progress import MetricHistory, ProgressUpdate, compute_progress, frequency_window
from .personal_records import representative_performance, supersedes

__all__ = [
    "MathTools",
    "MetricHistory",
    "ProgressUpdate",
    "compute_progress",
    "frequency_window",
    "representative_performance",
    "supersedes",
]
