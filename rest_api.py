import datetime
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import APP_VERSION, load_settings
from db import (
    AsyncBodyMetricRepository,
    AsyncGoalRepository,
    AsyncJobLogRepository,
    AsyncPersonalRecordRepository,
    AsyncWorkoutCompletionRepository,
)
from goal_service import GoalService, GoalTransitionError
from job_scheduler import JobControl, build_scheduler
from models import ExercisePerformance, target_from_dict
from progress_service import ProgressService

logger = logging.getLogger(__name__)

READ_ROLES = {"trainer", "coach", "admin"}


class GoalCreate(BaseModel):
    user_id: str
    type: str
    title: str
    deadline: datetime.datetime
    target: dict = Field(default_factory=dict)
    description: Optional[str] = None
    start_value: Optional[float] = None


class GoalUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    deadline: Optional[datetime.datetime] = None
    target: Optional[dict] = None
    current_value: Optional[float] = None
    current_progress: Optional[float] = None


class BodyMetricCreate(BaseModel):
    user_id: str
    weight: Optional[float] = None
    body_fat: Optional[float] = None
    date: Optional[datetime.datetime] = None
    notes: Optional[str] = None


class ExerciseIn(BaseModel):
    exercise_id: str
    actual_reps: list[int] = Field(default_factory=list)
    actual_weight: list[float] = Field(default_factory=list)
    exercise_name: Optional[str] = None
    planned_sets: int = 0
    completed_sets: int = 0
    planned_reps: int = 0
    planned_weight: Optional[float] = None
    notes: Optional[str] = None


class WorkoutCompletionCreate(BaseModel):
    user_id: str
    duration: int = 0
    exercises: list[ExerciseIn] = Field(default_factory=list)
    workout_name: Optional[str] = None
    notes: Optional[str] = None
    rating: Optional[int] = None
    completed_at: Optional[datetime.datetime] = None


class FitnessAPI:
    """REST endpoints for goals, workout completions and maintenance jobs."""

    def __init__(
        self,
        db_path: str = "fitness.db",
        yaml_path: str = "settings.yaml",
        *,
        start_scheduler: bool = False,
    ) -> None:
        self.db_path = db_path
        self.settings = load_settings(yaml_path)
        self.goal_repo = AsyncGoalRepository(db_path)
        self.metric_repo = AsyncBodyMetricRepository(db_path)
        self.record_repo = AsyncPersonalRecordRepository(db_path)
        self.completion_repo = AsyncWorkoutCompletionRepository(db_path)
        self.log_repo = AsyncJobLogRepository(db_path)
        self.goals = GoalService(
            self.goal_repo, self.metric_repo, self.record_repo, self.completion_repo
        )
        self.progress = ProgressService(
            self.completion_repo, self.record_repo, self.metric_repo
        )
        self.scheduler = build_scheduler(db_path, self.settings, self.goals)
        self.jobs = JobControl(self.scheduler)
        self.start_scheduler = start_scheduler
        self.app = FastAPI(
            title="Fitness Engine API",
            description="Goal progress, personal records and maintenance jobs",
            version=APP_VERSION,
            lifespan=self._lifespan,
        )
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        """Run cron triggers for as long as the app is being served."""
        if self.start_scheduler:
            self.scheduler.start_all()
        try:
            yield
        finally:
            self.scheduler.stop_all()

    def _require_admin(self, role: str | None, api_key: str | None) -> None:
        if role != "admin":
            raise HTTPException(status_code=403, detail="admin role required")
        expected = self.settings.admin_api_key
        if expected and api_key != expected:
            raise HTTPException(status_code=403, detail="invalid api key")

    @staticmethod
    def _require_owner(owner_id: str, caller: str | None) -> None:
        if caller is None:
            raise HTTPException(status_code=401, detail="user id required")
        if caller != owner_id:
            raise HTTPException(status_code=403, detail="not allowed")

    @staticmethod
    def _require_reader(owner_id: str, caller: str | None, role: str | None) -> None:
        if caller is None:
            raise HTTPException(status_code=401, detail="user id required")
        if caller != owner_id and role not in READ_ROLES:
            raise HTTPException(status_code=403, detail="not allowed")

    async def _owned_goal(self, goal_id: int, caller: str | None):
        try:
            goal = await self.goals.get_goal(goal_id)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))
        self._require_owner(goal.user_id, caller)
        return goal

    def _setup_routes(self) -> None:
        jobs_router = APIRouter(prefix="/jobs", tags=["Jobs"])

        @self.app.get("/health", summary="Health check")
        async def health():
            try:
                await self.log_repo.recent(1)
                return {"status": "ok", "version": APP_VERSION}
            except Exception as e:  # pragma: no cover - connectivity failure
                raise HTTPException(status_code=500, detail=str(e))

        @jobs_router.get("")
        async def list_jobs(
            x_user_role: str | None = Header(None),
            x_api_key: str | None = Header(None),
        ):
            self._require_admin(x_user_role, x_api_key)
            return self.jobs.list_jobs()

        @jobs_router.get("/logs")
        async def recent_logs(
            limit: int = 50,
            x_user_role: str | None = Header(None),
            x_api_key: str | None = Header(None),
        ):
            self._require_admin(x_user_role, x_api_key)
            return [log.to_dict() for log in await self.jobs.recent_logs(limit)]

        @jobs_router.get("/{name}/logs")
        async def job_logs(
            name: str,
            limit: int = 20,
            x_user_role: str | None = Header(None),
            x_api_key: str | None = Header(None),
        ):
            self._require_admin(x_user_role, x_api_key)
            return [log.to_dict() for log in await self.jobs.logs_for_job(name, limit)]

        @jobs_router.post("/{name}/trigger")
        async def trigger_job(
            name: str,
            x_user_role: str | None = Header(None),
            x_api_key: str | None = Header(None),
        ):
            self._require_admin(x_user_role, x_api_key)
            result = await self.jobs.trigger(name)
            if result.status != "success":
                return JSONResponse(status_code=500, content=result.to_dict())
            return result.to_dict()

        @jobs_router.post("/{name}/stop")
        async def stop_job(
            name: str,
            x_user_role: str | None = Header(None),
            x_api_key: str | None = Header(None),
        ):
            self._require_admin(x_user_role, x_api_key)
            if not self.jobs.stop(name):
                raise HTTPException(status_code=404, detail="job not scheduled")
            return {"status": "stopped", "job": name}

        @jobs_router.post("/{name}/start")
        async def start_job(
            name: str,
            x_user_role: str | None = Header(None),
            x_api_key: str | None = Header(None),
        ):
            self._require_admin(x_user_role, x_api_key)
            if not self.jobs.start(name):
                raise HTTPException(
                    status_code=400, detail="unknown job or already scheduled"
                )
            return {"status": "started", "job": name}

        @self.app.post("/goals")
        async def create_goal(
            payload: GoalCreate, x_user_id: str | None = Header(None)
        ):
            self._require_owner(payload.user_id, x_user_id)
            try:
                target = target_from_dict(payload.type, payload.target)
            except (TypeError, ValueError) as e:
                raise HTTPException(status_code=400, detail=str(e))
            goal = await self.goals.create_goal(
                payload.user_id,
                payload.title,
                target,
                payload.deadline,
                description=payload.description,
                start_value=payload.start_value,
            )
            return goal.to_dict()

        @self.app.get("/users/{user_id}/goals")
        async def list_goals(
            user_id: str,
            type: str | None = None,
            status: str | None = None,
            x_user_id: str | None = Header(None),
            x_user_role: str | None = Header(None),
        ):
            self._require_reader(user_id, x_user_id, x_user_role)
            try:
                goals = await self.goals.list_goals(user_id, type, status)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return [g.to_dict() for g in goals]

        @self.app.get("/users/{user_id}/goals/statistics")
        async def goal_statistics(
            user_id: str,
            x_user_id: str | None = Header(None),
            x_user_role: str | None = Header(None),
        ):
            self._require_reader(user_id, x_user_id, x_user_role)
            return await self.goals.goal_statistics(user_id)

        @self.app.post("/users/{user_id}/goals/check_expired")
        async def check_expired(user_id: str, x_user_id: str | None = Header(None)):
            self._require_owner(user_id, x_user_id)
            expired = await self.goals.check_expired_goals(user_id)
            return [g.to_dict() for g in expired]

        @self.app.get("/goals/{goal_id}")
        async def get_goal(
            goal_id: int,
            x_user_id: str | None = Header(None),
            x_user_role: str | None = Header(None),
        ):
            try:
                goal = await self.goals.get_goal(goal_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            self._require_reader(goal.user_id, x_user_id, x_user_role)
            return goal.to_dict()

        @self.app.put("/goals/{goal_id}")
        async def update_goal(
            goal_id: int, payload: GoalUpdate, x_user_id: str | None = Header(None)
        ):
            goal = await self._owned_goal(goal_id, x_user_id)
            try:
                target = (
                    target_from_dict(goal.type, payload.target)
                    if payload.target is not None
                    else None
                )
                updated = await self.goals.update_goal(
                    goal_id,
                    title=payload.title,
                    description=payload.description,
                    target=target,
                    deadline=payload.deadline,
                    current_value=payload.current_value,
                    current_progress=payload.current_progress,
                )
            except (TypeError, ValueError) as e:
                raise HTTPException(status_code=400, detail=str(e))
            return updated.to_dict()

        @self.app.delete("/goals/{goal_id}")
        async def delete_goal(goal_id: int, x_user_id: str | None = Header(None)):
            await self._owned_goal(goal_id, x_user_id)
            await self.goals.delete_goal(goal_id)
            return {"status": "deleted"}

        @self.app.post("/goals/{goal_id}/complete")
        async def complete_goal(goal_id: int, x_user_id: str | None = Header(None)):
            await self._owned_goal(goal_id, x_user_id)
            try:
                goal = await self.goals.complete_goal(goal_id)
            except GoalTransitionError as e:
                raise HTTPException(status_code=409, detail=str(e))
            return goal.to_dict()

        @self.app.post("/goals/{goal_id}/abandon")
        async def abandon_goal(goal_id: int, x_user_id: str | None = Header(None)):
            await self._owned_goal(goal_id, x_user_id)
            try:
                goal = await self.goals.abandon_goal(goal_id)
            except GoalTransitionError as e:
                raise HTTPException(status_code=409, detail=str(e))
            return goal.to_dict()

        @self.app.post("/goals/{goal_id}/refresh")
        async def refresh_goal(goal_id: int, x_user_id: str | None = Header(None)):
            await self._owned_goal(goal_id, x_user_id)
            goal = await self.goals.refresh_progress(goal_id)
            return goal.to_dict()

        @self.app.post("/body_metrics")
        async def log_body_metric(
            payload: BodyMetricCreate, x_user_id: str | None = Header(None)
        ):
            self._require_owner(payload.user_id, x_user_id)
            try:
                metric = await self.progress.log_body_metric(
                    payload.user_id,
                    weight=payload.weight,
                    body_fat=payload.body_fat,
                    date=payload.date,
                    notes=payload.notes,
                )
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return metric.to_dict()

        @self.app.post("/workouts/{workout_id}/complete")
        async def complete_workout(
            workout_id: str,
            payload: WorkoutCompletionCreate,
            x_user_id: str | None = Header(None),
        ):
            self._require_owner(payload.user_id, x_user_id)
            exercises = [ExercisePerformance(**ex.model_dump()) for ex in payload.exercises]
            completion, records = await self.progress.complete_workout(
                payload.user_id,
                workout_id,
                payload.duration,
                exercises,
                workout_name=payload.workout_name,
                notes=payload.notes,
                rating=payload.rating,
                completed_at=payload.completed_at,
            )
            return {
                "completion": completion.to_dict(),
                "new_personal_records": [r.to_dict() for r in records],
            }

        @self.app.get("/users/{user_id}/personal_records")
        async def personal_records(
            user_id: str,
            x_user_id: str | None = Header(None),
            x_user_role: str | None = Header(None),
        ):
            self._require_reader(user_id, x_user_id, x_user_role)
            return [r.to_dict() for r in await self.progress.personal_records(user_id)]

        @self.app.get("/users/{user_id}/exercises/{exercise_id}/progress")
        async def exercise_progress(
            user_id: str,
            exercise_id: str,
            x_user_id: str | None = Header(None),
            x_user_role: str | None = Header(None),
        ):
            self._require_reader(user_id, x_user_id, x_user_role)
            try:
                return await self.progress.exercise_progress(user_id, exercise_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        self.app.include_router(jobs_router)


def create_app() -> FastAPI:
    return FitnessAPI(
        db_path=os.environ.get("DB_PATH", "fitness.db"),
        yaml_path=os.environ.get("FITNESS_SETTINGS", "settings.yaml"),
        start_scheduler=True,
    ).app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app())
