import sqlite3
import aiosqlite
import datetime
import json
import logging
from contextlib import contextmanager, asynccontextmanager
from dataclasses import asdict
from typing import List, Tuple, Optional, Iterable

from models import (
    BodyMetric,
    ExercisePerformance,
    Goal,
    GoalTarget,
    JobLog,
    JobResult,
    PersonalRecord,
    WorkoutCompletion,
    from_iso,
    target_from_dict,
    target_type,
    to_iso,
    utcnow,
)
from algorithms.math_tools import MathTools
from algorithms.personal_records import supersedes

logger = logging.getLogger(__name__)


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "goals": (
            """CREATE TABLE goals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    target TEXT NOT NULL,
                    start_value REAL,
                    current_value REAL,
                    current_progress REAL,
                    start_date TEXT NOT NULL,
                    deadline TEXT NOT NULL,
                    completed_at TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );""",
            [
                "id",
                "user_id",
                "type",
                "title",
                "description",
                "target",
                "start_value",
                "current_value",
                "current_progress",
                "start_date",
                "deadline",
                "completed_at",
                "status",
                "created_at",
                "updated_at",
            ],
        ),
        "body_metrics": (
            """CREATE TABLE body_metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    date TEXT NOT NULL,
                    weight REAL,
                    body_fat REAL,
                    notes TEXT
                );""",
            ["id", "user_id", "date", "weight", "body_fat", "notes"],
        ),
        "personal_records": (
            """CREATE TABLE personal_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    exercise_id TEXT NOT NULL,
                    exercise_name TEXT NOT NULL,
                    weight REAL NOT NULL,
                    reps INTEGER NOT NULL,
                    achieved_at TEXT NOT NULL,
                    workout_completion_id INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (user_id, exercise_id)
                );""",
            [
                "id",
                "user_id",
                "exercise_id",
                "exercise_name",
                "weight",
                "reps",
                "achieved_at",
                "workout_completion_id",
                "created_at",
                "updated_at",
            ],
        ),
        "workout_completions": (
            """CREATE TABLE workout_completions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    workout_id TEXT NOT NULL,
                    workout_name TEXT,
                    completed_at TEXT NOT NULL,
                    duration INTEGER NOT NULL DEFAULT 0,
                    exercises TEXT NOT NULL,
                    notes TEXT,
                    rating INTEGER
                );""",
            [
                "id",
                "user_id",
                "workout_id",
                "workout_name",
                "completed_at",
                "duration",
                "exercises",
                "notes",
                "rating",
            ],
        ),
        "job_logs": (
            """CREATE TABLE job_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    duration INTEGER NOT NULL DEFAULT 0,
                    items_processed INTEGER NOT NULL DEFAULT 0,
                    message TEXT NOT NULL DEFAULT '',
                    error TEXT,
                    created_at TEXT NOT NULL
                );""",
            [
                "id",
                "job_name",
                "status",
                "start_time",
                "end_time",
                "duration",
                "items_processed",
                "message",
                "error",
                "created_at",
            ],
        ),
    }

    _INDEXES = (
        "CREATE INDEX IF NOT EXISTS idx_goals_status ON goals (status);",
        "CREATE INDEX IF NOT EXISTS idx_goals_user ON goals (user_id);",
        "CREATE INDEX IF NOT EXISTS idx_body_metrics_user_date ON body_metrics (user_id, date);",
        "CREATE INDEX IF NOT EXISTS idx_completions_user_date ON workout_completions (user_id, completed_at);",
        "CREATE INDEX IF NOT EXISTS idx_job_logs_created ON job_logs (created_at);",
        "CREATE INDEX IF NOT EXISTS idx_job_logs_name ON job_logs (job_name, created_at);",
    )

    def __init__(self, db_path: str = "fitness.db") -> None:
        self._db_path = db_path
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path)
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA foreign_keys=off;")
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)
            for stmt in self._INDEXES:
                cursor.execute(stmt)
            cursor.execute("PRAGMA foreign_keys=on;")

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        logger.info("migrating table %s", table)
        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col == "status":
                        return "'active'"
                    if col in ("duration", "items_processed"):
                        return "0"
                    if col == "message":
                        return "''"
                    if col in ("created_at", "updated_at"):
                        return f"'{to_iso(utcnow())}'"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        conn.execute(f"DROP TABLE {table}_old;")

    def vacuum(self) -> None:
        """Run SQLite VACUUM to reduce database size."""
        with self._connection() as conn:
            conn.execute("VACUUM;")


class AsyncDatabase(Database):
    """Provides asynchronous connection management."""

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path)
        try:
            yield conn
            await conn.commit()
        finally:
            await conn.close()


class AsyncBaseRepository(AsyncDatabase):
    """Asynchronous variant of BaseRepository using aiosqlite."""

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.lastrowid

    async def execute_rowcount(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.rowcount

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return rows


class AsyncGoalRepository(AsyncBaseRepository):
    """Async repository for goal documents."""

    _COLUMNS = (
        "id, user_id, type, title, description, target, start_value, current_value, "
        "current_progress, start_date, deadline, completed_at, status, created_at, updated_at"
    )

    @staticmethod
    def _row_to_goal(r: Tuple) -> Goal:
        return Goal(
            id=r[0],
            user_id=r[1],
            type=r[2],
            title=r[3],
            description=r[4],
            target=target_from_dict(r[2], json.loads(r[5])),
            start_value=r[6],
            current_value=r[7],
            current_progress=r[8],
            start_date=from_iso(r[9]),
            deadline=from_iso(r[10]),
            completed_at=from_iso(r[11]),
            status=r[12],
            created_at=from_iso(r[13]),
            updated_at=from_iso(r[14]),
        )

    async def add(
        self,
        user_id: str,
        title: str,
        target: GoalTarget,
        deadline: datetime.datetime,
        *,
        description: str | None = None,
        start_value: float | None = None,
        start_date: datetime.datetime | None = None,
    ) -> int:
        now = to_iso(utcnow())
        return await self.execute(
            "INSERT INTO goals (user_id, type, title, description, target, start_value, current_value, "
            "start_date, deadline, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?);",
            (
                user_id,
                target_type(target),
                title,
                description,
                json.dumps(asdict(target)),
                start_value,
                start_value,
                to_iso(start_date) if start_date else now,
                to_iso(deadline),
                now,
                now,
            ),
        )

    async def fetch(self, goal_id: int) -> Goal:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM goals WHERE id = ?;", (goal_id,)
        )
        if not rows:
            raise ValueError("goal not found")
        return self._row_to_goal(rows[0])

    async def fetch_for_user(
        self,
        user_id: str,
        goal_type: str | None = None,
        status: str | None = None,
    ) -> list[Goal]:
        query = f"SELECT {self._COLUMNS} FROM goals WHERE user_id = ?"
        params: list = [user_id]
        if goal_type is not None:
            query += " AND type = ?"
            params.append(goal_type)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC;"
        rows = await self.fetch_all(query, tuple(params))
        return [self._row_to_goal(r) for r in rows]

    async def find_active_goals(self) -> list[Goal]:
        """Return active goals across all users in storage order."""
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM goals WHERE status = 'active' ORDER BY id;"
        )
        return [self._row_to_goal(r) for r in rows]

    async def update(
        self,
        goal_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        target: GoalTarget | None = None,
        deadline: datetime.datetime | None = None,
        status: str | None = None,
        completed_at: datetime.datetime | None = None,
    ) -> Goal:
        goal = await self.fetch(goal_id)
        fields = []
        params: list = []
        if title is not None:
            fields.append("title = ?")
            params.append(title)
        if description is not None:
            fields.append("description = ?")
            params.append(description)
        if target is not None:
            if target_type(target) != goal.type:
                raise ValueError("target does not match goal type")
            fields.append("target = ?")
            params.append(json.dumps(asdict(target)))
        if deadline is not None:
            fields.append("deadline = ?")
            params.append(to_iso(deadline))
        if status is not None and status != goal.status:
            fields.append("status = ?")
            params.append(status)
            if status == "completed":
                fields.append("completed_at = ?")
                params.append(to_iso(completed_at or utcnow()))
            else:
                fields.append("completed_at = NULL")
        if not fields:
            return goal
        fields.append("updated_at = ?")
        params.append(to_iso(utcnow()))
        params.append(goal_id)
        await self.execute(
            f"UPDATE goals SET {', '.join(fields)} WHERE id = ?;",
            tuple(params),
        )
        return await self.fetch(goal_id)

    async def update_progress(
        self,
        goal_id: int,
        current_value: float | None = None,
        current_progress: float | None = None,
    ) -> Goal:
        """Persist computed progress; absent values leave the stored ones untouched."""
        goal = await self.fetch(goal_id)
        fields = []
        params: list = []
        if current_value is not None:
            fields.append("current_value = ?")
            params.append(float(current_value))
        if current_progress is not None:
            fields.append("current_progress = ?")
            params.append(MathTools.clamp(float(current_progress), 0.0, 100.0))
        if not fields:
            return goal
        fields.append("updated_at = ?")
        params.append(to_iso(utcnow()))
        params.append(goal_id)
        await self.execute(
            f"UPDATE goals SET {', '.join(fields)} WHERE id = ?;",
            tuple(params),
        )
        return await self.fetch(goal_id)

    async def delete(self, goal_id: int) -> None:
        await self.fetch(goal_id)
        await self.execute("DELETE FROM goals WHERE id = ?;", (goal_id,))


class AsyncBodyMetricRepository(AsyncBaseRepository):
    """Async repository for body weight and body fat samples."""

    @staticmethod
    def _row_to_metric(r: Tuple) -> BodyMetric:
        return BodyMetric(
            id=r[0],
            user_id=r[1],
            date=from_iso(r[2]),
            weight=r[3],
            body_fat=r[4],
            notes=r[5],
        )

    async def add(
        self,
        user_id: str,
        *,
        weight: float | None = None,
        body_fat: float | None = None,
        date: datetime.datetime | None = None,
        notes: str | None = None,
    ) -> BodyMetric:
        if weight is None and body_fat is None:
            raise ValueError("weight or body_fat required")
        when = date or utcnow()
        mid = await self.execute(
            "INSERT INTO body_metrics (user_id, date, weight, body_fat, notes) VALUES (?, ?, ?, ?, ?);",
            (user_id, to_iso(when), weight, body_fat, notes),
        )
        return BodyMetric(mid, user_id, from_iso(to_iso(when)), weight, body_fat, notes)

    async def fetch_recent(self, user_id: str, limit: int = 10) -> list[BodyMetric]:
        """Return samples for ``user_id`` ordered most recent first."""
        rows = await self.fetch_all(
            "SELECT id, user_id, date, weight, body_fat, notes FROM body_metrics "
            "WHERE user_id = ? ORDER BY date DESC, id DESC LIMIT ?;",
            (user_id, limit),
        )
        return [self._row_to_metric(r) for r in rows]


class AsyncPersonalRecordRepository(AsyncBaseRepository):
    """Async repository holding one running best per user and exercise."""

    _COLUMNS = (
        "id, user_id, exercise_id, exercise_name, weight, reps, achieved_at, "
        "workout_completion_id, created_at, updated_at"
    )

    @staticmethod
    def _row_to_record(r: Tuple) -> PersonalRecord:
        return PersonalRecord(
            id=r[0],
            user_id=r[1],
            exercise_id=r[2],
            exercise_name=r[3],
            weight=float(r[4]),
            reps=int(r[5]),
            achieved_at=from_iso(r[6]),
            workout_completion_id=r[7],
            created_at=from_iso(r[8]),
            updated_at=from_iso(r[9]),
        )

    async def fetch_for_exercise(
        self, user_id: str, exercise_id: str
    ) -> Optional[PersonalRecord]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM personal_records WHERE user_id = ? AND exercise_id = ?;",
            (user_id, exercise_id),
        )
        return self._row_to_record(rows[0]) if rows else None

    async def fetch_for_user(self, user_id: str) -> list[PersonalRecord]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM personal_records WHERE user_id = ? "
            "ORDER BY achieved_at DESC, id DESC;",
            (user_id,),
        )
        return [self._row_to_record(r) for r in rows]

    async def upsert(
        self,
        user_id: str,
        exercise_id: str,
        exercise_name: str,
        weight: float,
        reps: int,
        workout_completion_id: int | None = None,
        achieved_at: datetime.datetime | None = None,
    ) -> tuple[PersonalRecord, bool]:
        """Store ``(weight, reps)`` if it beats the current record.

        Returns the record now on file and whether the candidate was stored.
        A candidate that does not supersede the existing record causes no
        write at all. The write itself is a single conditional
        ``INSERT ... ON CONFLICT`` so concurrent completions for the same
        exercise keep the heavier set.
        """
        select = (
            f"SELECT {self._COLUMNS} FROM personal_records "
            "WHERE user_id = ? AND exercise_id = ?;"
        )
        now = to_iso(utcnow())
        when = to_iso(achieved_at) if achieved_at else now
        async with self._async_connection() as conn:
            cursor = await conn.execute(select, (user_id, exercise_id))
            row = await cursor.fetchone()
            existing = self._row_to_record(row) if row else None
            if existing is not None and not supersedes(
                (weight, reps), (existing.weight, existing.reps)
            ):
                return existing, False
            cursor = await conn.execute(
                "INSERT INTO personal_records (user_id, exercise_id, exercise_name, weight, reps, "
                "achieved_at, workout_completion_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(user_id, exercise_id) DO UPDATE SET "
                "exercise_name=excluded.exercise_name, weight=excluded.weight, "
                "reps=excluded.reps, achieved_at=excluded.achieved_at, "
                "workout_completion_id=excluded.workout_completion_id, "
                "updated_at=excluded.updated_at "
                "WHERE excluded.weight > personal_records.weight "
                "OR (excluded.weight = personal_records.weight "
                "AND excluded.reps > personal_records.reps);",
                (
                    user_id,
                    exercise_id,
                    exercise_name,
                    float(weight),
                    int(reps),
                    when,
                    workout_completion_id,
                    now,
                    now,
                ),
            )
            stored = cursor.rowcount > 0
            cursor = await conn.execute(select, (user_id, exercise_id))
            record = self._row_to_record(await cursor.fetchone())
            await conn.commit()
        if stored and existing is None:
            logger.info(
                "new personal record user=%s exercise=%s %.2fx%d",
                user_id,
                exercise_id,
                weight,
                reps,
            )
        elif stored:
            logger.info(
                "personal record superseded user=%s exercise=%s %.2fx%d -> %.2fx%d",
                user_id,
                exercise_id,
                existing.weight,
                existing.reps,
                weight,
                reps,
            )
        return record, stored


class AsyncWorkoutCompletionRepository(AsyncBaseRepository):
    """Async repository for completed workouts and their per-set results."""

    _COLUMNS = (
        "id, user_id, workout_id, workout_name, completed_at, duration, exercises, notes, rating"
    )

    @staticmethod
    def _row_to_completion(r: Tuple) -> WorkoutCompletion:
        return WorkoutCompletion(
            id=r[0],
            user_id=r[1],
            workout_id=r[2],
            workout_name=r[3],
            completed_at=from_iso(r[4]),
            duration=int(r[5]),
            exercises=[ExercisePerformance(**e) for e in json.loads(r[6])],
            notes=r[7],
            rating=r[8],
        )

    async def add(
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
    ) -> WorkoutCompletion:
        items = list(exercises)
        when = to_iso(completed_at or utcnow())
        cid = await self.execute(
            "INSERT INTO workout_completions (user_id, workout_id, workout_name, completed_at, duration, "
            "exercises, notes, rating) VALUES (?, ?, ?, ?, ?, ?, ?, ?);",
            (
                user_id,
                workout_id,
                workout_name,
                when,
                int(duration),
                json.dumps([asdict(e) for e in items]),
                notes,
                rating,
            ),
        )
        return WorkoutCompletion(
            id=cid,
            user_id=user_id,
            workout_id=workout_id,
            workout_name=workout_name,
            completed_at=from_iso(when),
            duration=int(duration),
            exercises=items,
            notes=notes,
            rating=rating,
        )

    async def fetch_between(
        self,
        user_id: str,
        start: datetime.datetime | None = None,
        end: datetime.datetime | None = None,
    ) -> list[WorkoutCompletion]:
        """Return completions with ``start <= completed_at <= end``, newest first."""
        query = f"SELECT {self._COLUMNS} FROM workout_completions WHERE user_id = ?"
        params: list = [user_id]
        if start is not None:
            query += " AND completed_at >= ?"
            params.append(to_iso(start))
        if end is not None:
            query += " AND completed_at <= ?"
            params.append(to_iso(end))
        query += " ORDER BY completed_at DESC, id DESC;"
        rows = await self.fetch_all(query, tuple(params))
        return [self._row_to_completion(r) for r in rows]

    async def count_between(
        self, user_id: str, start: datetime.datetime, end: datetime.datetime
    ) -> int:
        rows = await self.fetch_all(
            "SELECT COUNT(*) FROM workout_completions WHERE user_id = ? "
            "AND completed_at >= ? AND completed_at <= ?;",
            (user_id, to_iso(start), to_iso(end)),
        )
        return int(rows[0][0])


class AsyncJobLogRepository(AsyncBaseRepository):
    """Append-only audit trail of job executions."""

    _COLUMNS = (
        "id, job_name, status, start_time, end_time, duration, items_processed, message, error, created_at"
    )

    @staticmethod
    def _row_to_log(r: Tuple) -> JobLog:
        return JobLog(
            id=r[0],
            job_name=r[1],
            status=r[2],
            start_time=from_iso(r[3]),
            end_time=from_iso(r[4]),
            duration=int(r[5]),
            items_processed=int(r[6]),
            message=r[7],
            error=r[8],
            created_at=from_iso(r[9]),
        )

    async def append(self, result: JobResult) -> JobLog:
        now = utcnow()
        end_time = result.end_time or now
        lid = await self.execute(
            "INSERT INTO job_logs (job_name, status, start_time, end_time, duration, items_processed, "
            "message, error, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);",
            (
                result.job_name,
                result.status,
                to_iso(result.start_time),
                to_iso(end_time),
                int(result.duration or 0),
                int(result.items_processed or 0),
                result.message or "",
                result.error,
                to_iso(now),
            ),
        )
        return JobLog(
            id=lid,
            job_name=result.job_name,
            status=result.status,
            start_time=result.start_time,
            end_time=end_time,
            duration=int(result.duration or 0),
            items_processed=int(result.items_processed or 0),
            message=result.message or "",
            error=result.error,
            created_at=now,
        )

    async def recent(self, limit: int = 50) -> list[JobLog]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM job_logs ORDER BY created_at DESC, id DESC LIMIT ?;",
            (limit,),
        )
        return [self._row_to_log(r) for r in rows]

    async def for_job(self, job_name: str, limit: int = 20) -> list[JobLog]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM job_logs WHERE job_name = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ?;",
            (job_name, limit),
        )
        return [self._row_to_log(r) for r in rows]

    async def delete_older_than(
        self, cutoff: datetime.datetime, batch_size: int = 500
    ) -> int:
        """Delete entries created before ``cutoff`` in batches of ``batch_size``."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        deleted = 0
        while True:
            rows = await self.fetch_all(
                "SELECT id FROM job_logs WHERE created_at < ? ORDER BY id LIMIT ?;",
                (to_iso(cutoff), batch_size),
            )
            if not rows:
                break
            ids = [r[0] for r in rows]
            marks = ", ".join("?" for _ in ids)
            deleted += await self.execute_rowcount(
                f"DELETE FROM job_logs WHERE id IN ({marks});", tuple(ids)
            )
            if len(ids) < batch_size:
                break
        return deleted
