import os
import sys
import sqlite3
import datetime

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import (
    AsyncBodyMetricRepository,
    AsyncGoalRepository,
    AsyncWorkoutCompletionRepository,
    Database,
)
from models import ExercisePerformance, FrequencyTarget, WeightTarget, utcnow


class TestSchemaMigration:
    def test_adds_missing_columns(self, tmp_path):
        db_file = tmp_path / "legacy.db"
        conn = sqlite3.connect(str(db_file))
        conn.execute(
            "CREATE TABLE job_logs (id INTEGER PRIMARY KEY AUTOINCREMENT, job_name TEXT, status TEXT, "
            "start_time TEXT, end_time TEXT, created_at TEXT)"
        )
        conn.execute(
            "INSERT INTO job_logs (job_name, status, start_time, end_time, created_at) "
            "VALUES ('expire-goals', 'success', '2024-01-01', '2024-01-01', '2024-01-01')"
        )
        conn.commit()
        conn.close()

        Database(str(db_file))

        conn = sqlite3.connect(str(db_file))
        cols = [row[1] for row in conn.execute("PRAGMA table_info(job_logs)").fetchall()]
        assert "items_processed" in cols
        assert "error" in cols
        row = conn.execute("SELECT job_name, items_processed, message FROM job_logs").fetchone()
        assert row == ("expire-goals", 0, "")
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='job_logs_old'"
        )
        assert cur.fetchone() is None
        conn.close()


@pytest.mark.asyncio
async def test_goal_round_trip(tmp_path):
    repo = AsyncGoalRepository(str(tmp_path / "db.db"))
    deadline = utcnow() + datetime.timedelta(days=7)
    gid = await repo.add("u1", "Train", FrequencyTarget(workouts_per_week=3), deadline)
    goal = await repo.fetch(gid)
    assert goal.type == "workout_frequency"
    assert goal.target == FrequencyTarget(workouts_per_week=3)
    assert goal.deadline == deadline
    assert [g.id for g in await repo.find_active_goals()] == [gid]

    await repo.update(gid, status="abandoned")
    assert await repo.find_active_goals() == []


@pytest.mark.asyncio
async def test_update_progress_clamps_and_skips_missing(tmp_path):
    repo = AsyncGoalRepository(str(tmp_path / "db.db"))
    gid = await repo.add("u1", "Cut", WeightTarget(80.0), utcnow(), start_value=90.0)
    goal = await repo.update_progress(gid, current_progress=140.0)
    assert goal.current_progress == 100.0
    assert goal.current_value == 90.0
    unchanged = await repo.update_progress(gid)
    assert unchanged.updated_at == goal.updated_at


@pytest.mark.asyncio
async def test_body_metrics_newest_first(tmp_path):
    repo = AsyncBodyMetricRepository(str(tmp_path / "db.db"))
    now = utcnow()
    await repo.add("u1", weight=80.0, date=now - datetime.timedelta(days=2))
    await repo.add("u1", weight=79.0, date=now)
    await repo.add("u1", weight=79.5, date=now - datetime.timedelta(days=1))
    assert [m.weight for m in await repo.fetch_recent("u1")] == [79.0, 79.5, 80.0]
    with pytest.raises(ValueError):
        await repo.add("u1")


@pytest.mark.asyncio
async def test_completions_keep_exercise_details(tmp_path):
    repo = AsyncWorkoutCompletionRepository(str(tmp_path / "db.db"))
    now = utcnow()
    ex = ExercisePerformance("bench", [5, 5], [100.0, 102.5], exercise_name="Bench")
    await repo.add("u1", "w1", 2400, [ex], completed_at=now - datetime.timedelta(days=3))
    await repo.add("u1", "w2", 1800, [], completed_at=now)
    completions = await repo.fetch_between("u1")
    assert [c.workout_id for c in completions] == ["w2", "w1"]
    assert completions[1].exercises == [ex]
    window = await repo.count_between("u1", now - datetime.timedelta(days=1), now)
    assert window == 1
