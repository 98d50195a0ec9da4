import os
import sys
import datetime
import unittest

import yaml
from fastapi.testclient import TestClient

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from rest_api import FitnessAPI

ADMIN = {"X-User-Role": "admin", "X-User-Id": "root"}
OWNER = {"X-User-Id": "u1"}


def in_days(days: int) -> str:
    return (datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=days)).isoformat()


class APITestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_engine.db"
        self.yaml_path = "test_engine.yaml"
        for path in (self.db_path, self.yaml_path):
            if os.path.exists(path):
                os.remove(path)
        self.api = FitnessAPI(db_path=self.db_path, yaml_path=self.yaml_path)
        self.client = TestClient(self.api.app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        for path in (self.db_path, self.yaml_path):
            if os.path.exists(path):
                os.remove(path)

    def create_goal(self, **overrides) -> dict:
        payload = {
            "user_id": "u1",
            "type": "strength",
            "title": "Squat 225",
            "deadline": in_days(30),
            "target": {"exercise_id": "squat", "target_weight": 225, "target_reps": 5},
        }
        payload.update(overrides)
        resp = self.client.post("/goals", json=payload, headers=OWNER)
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()

    def test_health(self) -> None:
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")

    def test_job_routes_require_admin(self) -> None:
        self.assertEqual(self.client.get("/jobs").status_code, 403)
        resp = self.client.get("/jobs", headers={"X-User-Role": "coach"})
        self.assertEqual(resp.status_code, 403)
        resp = self.client.post("/jobs/expire-goals/trigger", headers=OWNER)
        self.assertEqual(resp.status_code, 403)

    def test_list_start_stop_jobs(self) -> None:
        resp = self.client.get("/jobs", headers=ADMIN)
        self.assertEqual(resp.status_code, 200)
        jobs = {j["name"]: j for j in resp.json()}
        self.assertEqual(
            set(jobs), {"expire-goals", "update-goal-progress", "cleanup-old-logs"}
        )
        self.assertFalse(jobs["expire-goals"]["scheduled"])

        self.assertEqual(
            self.client.post("/jobs/expire-goals/stop", headers=ADMIN).status_code, 404
        )
        self.assertEqual(
            self.client.post("/jobs/expire-goals/start", headers=ADMIN).status_code, 200
        )
        self.assertEqual(
            self.client.post("/jobs/expire-goals/start", headers=ADMIN).status_code, 400
        )
        self.assertEqual(
            self.client.post("/jobs/unknown/start", headers=ADMIN).status_code, 400
        )
        jobs = {j["name"]: j for j in self.client.get("/jobs", headers=ADMIN).json()}
        self.assertTrue(jobs["expire-goals"]["scheduled"])
        self.assertIsNotNone(jobs["expire-goals"]["next_run"])

        resp = self.client.post("/jobs/expire-goals/stop", headers=ADMIN)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "stopped", "job": "expire-goals"})

    def test_trigger_and_logs(self) -> None:
        self.create_goal(deadline=in_days(-1))
        resp = self.client.post("/jobs/expire-goals/trigger", headers=ADMIN)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "success")
        self.assertEqual(body["items_processed"], 1)

        resp = self.client.post("/jobs/bogus/trigger", headers=ADMIN)
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["message"], "Unknown job: bogus")
        self.assertEqual(resp.json()["error"], "Job not found")

        logs = self.client.get("/jobs/logs", headers=ADMIN).json()
        self.assertEqual([l["job_name"] for l in logs], ["bogus", "expire-goals"])
        logs = self.client.get(
            "/jobs/expire-goals/logs", params={"limit": 5}, headers=ADMIN
        ).json()
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["status"], "success")

    def test_goal_lifecycle_routes(self) -> None:
        goal = self.create_goal()
        self.assertEqual(goal["status"], "active")

        resp = self.client.get(f"/goals/{goal['id']}", headers={"X-User-Id": "u2"})
        self.assertEqual(resp.status_code, 403)
        resp = self.client.get(
            f"/goals/{goal['id']}", headers={"X-User-Id": "t1", "X-User-Role": "trainer"}
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.get("/goals/999", headers=OWNER).status_code, 404)

        resp = self.client.post(
            f"/goals/{goal['id']}/complete", headers={"X-User-Id": "u2"}
        )
        self.assertEqual(resp.status_code, 403)
        resp = self.client.post(f"/goals/{goal['id']}/abandon", headers=OWNER)
        self.assertEqual(resp.json()["status"], "abandoned")
        resp = self.client.post(f"/goals/{goal['id']}/complete", headers=OWNER)
        self.assertEqual(resp.status_code, 409)

        goals = self.client.get("/users/u1/goals", headers=OWNER).json()
        self.assertEqual(len(goals), 1)
        stats = self.client.get("/users/u1/goals/statistics", headers=OWNER).json()
        self.assertEqual(stats["abandoned_goals"], 1)

    def test_update_and_delete_goal(self) -> None:
        goal = self.create_goal()
        resp = self.client.put(
            f"/goals/{goal['id']}",
            json={"title": "Squat 230", "target": {"exercise_id": "squat", "target_weight": 230, "target_reps": 5}},
            headers=OWNER,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["title"], "Squat 230")
        self.assertEqual(resp.json()["target"]["target_weight"], 230)

        resp = self.client.put(
            f"/goals/{goal['id']}", json={"target": {"text": "x"}}, headers=OWNER
        )
        self.assertEqual(resp.status_code, 400)

        resp = self.client.delete(f"/goals/{goal['id']}", headers={"X-User-Id": "u2"})
        self.assertEqual(resp.status_code, 403)
        resp = self.client.delete(f"/goals/{goal['id']}", headers=OWNER)
        self.assertEqual(resp.json(), {"status": "deleted"})
        self.assertEqual(self.client.get(f"/goals/{goal['id']}", headers=OWNER).status_code, 404)

    def test_owner_sets_custom_goal_progress(self) -> None:
        goal = self.create_goal(type="custom", title="Run a marathon", target={"text": "42km"})
        self.assertIsNone(goal["current_progress"])
        resp = self.client.put(
            f"/goals/{goal['id']}",
            json={"current_progress": 40, "current_value": 4},
            headers=OWNER,
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["current_progress"], 40.0)
        self.assertEqual(resp.json()["current_value"], 4.0)

        resp = self.client.put(
            f"/goals/{goal['id']}", json={"current_progress": 140}, headers=OWNER
        )
        self.assertEqual(resp.status_code, 400)
        resp = self.client.put(
            f"/goals/{goal['id']}", json={"current_progress": 50}, headers={"X-User-Id": "u2"}
        )
        self.assertEqual(resp.status_code, 403)
        stored = self.client.get(f"/goals/{goal['id']}", headers=OWNER).json()
        self.assertEqual(stored["current_progress"], 40.0)

    def test_create_goal_validation(self) -> None:
        payload = {
            "user_id": "u1",
            "type": "yoga",
            "title": "Bend",
            "deadline": in_days(3),
        }
        resp = self.client.post("/goals", json=payload, headers=OWNER)
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post(
            "/goals", json=dict(payload, type="weight"), headers={"X-User-Id": "u2"}
        )
        self.assertEqual(resp.status_code, 403)
        resp = self.client.post("/goals", json=dict(payload, type="weight"))
        self.assertEqual(resp.status_code, 401)

    def test_check_expired_route(self) -> None:
        self.create_goal(deadline=in_days(-1))
        self.create_goal(deadline=in_days(10))
        resp = self.client.post("/users/u1/goals/check_expired", headers=OWNER)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([g["status"] for g in resp.json()], ["expired"])

    def test_workout_completion_sets_records_and_progress(self) -> None:
        goal = self.create_goal()
        payload = {
            "user_id": "u1",
            "duration": 3600,
            "workout_name": "Leg day",
            "exercises": [
                {
                    "exercise_id": "squat",
                    "exercise_name": "Squat",
                    "actual_reps": [5, 5, 3],
                    "actual_weight": [200, 220, 220],
                }
            ],
        }
        resp = self.client.post("/workouts/w1/complete", json=payload, headers=OWNER)
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertEqual(len(body["new_personal_records"]), 1)
        self.assertEqual(body["new_personal_records"][0]["weight"], 220.0)
        self.assertEqual(body["new_personal_records"][0]["reps"], 5)

        resp = self.client.post(f"/goals/{goal['id']}/refresh", headers=OWNER)
        self.assertAlmostEqual(resp.json()["current_progress"], 97.78, places=2)

        resp = self.client.post("/workouts/w2/complete", json=payload, headers=OWNER)
        self.assertEqual(resp.json()["new_personal_records"], [])

        records = self.client.get("/users/u1/personal_records", headers=OWNER).json()
        self.assertEqual(len(records), 1)
        progress = self.client.get(
            "/users/u1/exercises/squat/progress", headers=OWNER
        ).json()
        self.assertEqual(progress["total_workouts"], 2)
        self.assertEqual(progress["personal_record"]["weight"], 220.0)
        resp = self.client.get("/users/u1/exercises/deadlift/progress", headers=OWNER)
        self.assertEqual(resp.status_code, 404)

    def test_body_metric_route(self) -> None:
        resp = self.client.post(
            "/body_metrics", json={"user_id": "u1", "weight": 82.5}, headers=OWNER
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["weight"], 82.5)
        resp = self.client.post("/body_metrics", json={"user_id": "u1"}, headers=OWNER)
        self.assertEqual(resp.status_code, 400)


class APIKeyTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_keys.db"
        self.yaml_path = "test_keys.yaml"
        with open(self.yaml_path, "w", encoding="utf-8") as f:
            yaml.safe_dump({"admin_api_key": "s3cret"}, f)
        self.api = FitnessAPI(db_path=self.db_path, yaml_path=self.yaml_path)
        self.client = TestClient(self.api.app)

    def tearDown(self) -> None:
        for path in (self.db_path, self.yaml_path):
            if os.path.exists(path):
                os.remove(path)

    def test_api_key_required(self) -> None:
        self.assertEqual(self.client.get("/jobs", headers=ADMIN).status_code, 403)
        resp = self.client.get("/jobs", headers=dict(ADMIN, **{"X-API-Key": "wrong"}))
        self.assertEqual(resp.status_code, 403)
        resp = self.client.get("/jobs", headers=dict(ADMIN, **{"X-API-Key": "s3cret"}))
        self.assertEqual(resp.status_code, 200)


class SchedulerLifespanTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_lifespan.db"
        self.yaml_path = "test_lifespan.yaml"
        self.api = FitnessAPI(
            db_path=self.db_path, yaml_path=self.yaml_path, start_scheduler=True
        )

    def tearDown(self) -> None:
        for path in (self.db_path, self.yaml_path):
            if os.path.exists(path):
                os.remove(path)

    def test_scheduler_runs_while_serving(self) -> None:
        self.assertFalse(self.api.scheduler.is_scheduled("expire-goals"))
        with TestClient(self.api.app) as client:
            jobs = {j["name"]: j for j in client.get("/jobs", headers=ADMIN).json()}
            self.assertTrue(all(j["scheduled"] for j in jobs.values()))
        self.assertFalse(self.api.scheduler.is_scheduled("expire-goals"))


if __name__ == "__main__":
    unittest.main()
