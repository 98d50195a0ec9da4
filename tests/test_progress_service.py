import os
import sys
import asyncio
import datetime

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import (
    AsyncBodyMetricRepository,
    AsyncPersonalRecordRepository,
    AsyncWorkoutCompletionRepository,
)
from models import ExercisePerformance, utcnow
from progress_service import ProgressService


def make_service(tmp_path) -> ProgressService:
    db_file = str(tmp_path / "progress.db")
    return ProgressService(
        AsyncWorkoutCompletionRepository(db_file),
        AsyncPersonalRecordRepository(db_file),
        AsyncBodyMetricRepository(db_file),
    )


@pytest.mark.asyncio
async def test_complete_workout_reports_only_new_records(tmp_path):
    service = make_service(tmp_path)
    bench = ExercisePerformance("bench", [5, 5], [100.0, 100.0], exercise_name="Bench")
    warmup = ExercisePerformance("plank", [1], [0.0], exercise_name="Plank")
    completion, records = await service.complete_workout("u1", "w1", 3000, [bench, warmup])
    assert completion.id is not None
    assert [(r.exercise_id, r.weight, r.reps) for r in records] == [("bench", 100.0, 5)]
    assert records[0].workout_completion_id == completion.id

    better = ExercisePerformance("bench", [8, 6], [100.0, 95.0], exercise_name="Bench")
    _, records = await service.complete_workout("u1", "w2", 3000, [better])
    assert [(r.weight, r.reps) for r in records] == [(100.0, 8)]

    worse = ExercisePerformance("bench", [10], [95.0], exercise_name="Bench")
    _, records = await service.complete_workout("u1", "w3", 3000, [worse])
    assert records == []
    stored = await service.personal_records("u1")
    assert [(r.weight, r.reps) for r in stored] == [(100.0, 8)]


@pytest.mark.asyncio
async def test_unnamed_exercise_gets_placeholder(tmp_path):
    service = make_service(tmp_path)
    _, records = await service.complete_workout(
        "u1", "w1", 60, [ExercisePerformance("row", [10], [50.0])]
    )
    assert records[0].exercise_name == "Unknown Exercise"


@pytest.mark.asyncio
async def test_exercise_progress(tmp_path):
    service = make_service(tmp_path)
    now = utcnow()
    await service.complete_workout(
        "u1",
        "w1",
        3000,
        [ExercisePerformance("bench", [5, 5], [100.0, 105.0], exercise_name="Bench")],
        completed_at=now - datetime.timedelta(days=7),
    )
    await service.complete_workout(
        "u1",
        "w2",
        3000,
        [ExercisePerformance("bench", [4], [110.0], exercise_name="Bench")],
        completed_at=now,
    )
    stats = await service.exercise_progress("u1", "bench")
    assert stats["total_workouts"] == 2
    assert stats["exercise_name"] == "Bench"
    assert [p["weight"] for p in stats["progress_data"]] == [105.0, 110.0]
    assert stats["progress_data"][0]["volume"] == 1025.0
    assert stats["personal_record"]["weight"] == 110.0
    assert stats["personal_record"]["est_1rm"] == pytest.approx(124.65, abs=0.01)

    with pytest.raises(ValueError):
        await service.exercise_progress("u1", "deadlift")


@pytest.mark.asyncio
async def test_log_body_metric(tmp_path):
    service = make_service(tmp_path)
    metric = await service.log_body_metric("u1", body_fat=18.5, notes="morning")
    assert metric.body_fat == 18.5
    assert metric.weight is None
    with pytest.raises(ValueError):
        await service.log_body_metric("u1")


@pytest.mark.asyncio
async def test_each_exercise_is_judged_on_its_own(tmp_path):
    service = make_service(tmp_path)
    await service.complete_workout(
        "u1",
        "w1",
        3000,
        [
            ExercisePerformance("bench", [5], [100.0], exercise_name="Bench"),
            ExercisePerformance("squat", [5], [140.0], exercise_name="Squat"),
        ],
    )
    squat_before = await service.records.fetch_for_exercise("u1", "squat")

    _, records = await service.complete_workout(
        "u1",
        "w2",
        3000,
        [
            ExercisePerformance("bench", [5], [102.5], exercise_name="Bench"),
            ExercisePerformance("squat", [8], [130.0], exercise_name="Squat"),
        ],
    )
    assert [(r.exercise_id, r.weight, r.reps) for r in records] == [("bench", 102.5, 5)]
    assert await service.records.fetch_for_exercise("u1", "squat") == squat_before


@pytest.mark.asyncio
async def test_simultaneous_completions_keep_the_heavier_record(tmp_path):
    service = make_service(tmp_path)
    await asyncio.gather(
        service.complete_workout(
            "u1", "w1", 3000, [ExercisePerformance("bench", [5], [100.0], exercise_name="Bench")]
        ),
        service.complete_workout(
            "u1", "w2", 3000, [ExercisePerformance("bench", [5], [110.0], exercise_name="Bench")]
        ),
    )
    records = await service.personal_records("u1")
    assert [(r.weight, r.reps) for r in records] == [(110.0, 5)]
    completions = await service.completions.fetch_between("u1")
    assert len(completions) == 2
