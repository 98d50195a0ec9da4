import argparse
import asyncio
import datetime
import json
import os

from client import EngineClient
from config import load_settings
from db import AsyncJobLogRepository
from job_scheduler import JobControl, build_scheduler
from logging_config import setup_logging
from models import utcnow


def list_jobs(db_path: str, yaml_path: str) -> None:
    settings = load_settings(yaml_path)
    control = JobControl(build_scheduler(db_path, settings))
    for job in control.list_jobs():
        state = "enabled" if job["enabled"] else "disabled"
        next_run = job["next_run"] or "-"
        print(
            f"{job['name']:<22} {job['schedule']:<14} {state:<9} "
            f"{next_run:<33} {job['description']}"
        )


def run_job(db_path: str, yaml_path: str, name: str) -> int:
    """Execute ``name`` once and return a process exit code."""
    settings = load_settings(yaml_path)
    control = JobControl(build_scheduler(db_path, settings))
    result = asyncio.run(control.trigger(name))
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.status == "success" else 1


def show_logs(db_path: str, yaml_path: str, job: str | None, limit: int) -> None:
    settings = load_settings(yaml_path)
    control = JobControl(build_scheduler(db_path, settings))
    if job:
        logs = asyncio.run(control.logs_for_job(job, limit))
    else:
        logs = asyncio.run(control.recent_logs(limit))
    for log in logs:
        line = (
            f"{log.created_at.isoformat()} {log.job_name} {log.status} "
            f"{log.items_processed} items {log.duration}ms {log.message}"
        )
        if log.error:
            line += f" ({log.error})"
        print(line)


def cleanup_logs(
    db_path: str, days: int, batch_size: int = 500, vacuum: bool = False
) -> int:
    repo = AsyncJobLogRepository(db_path)
    cutoff = utcnow() - datetime.timedelta(days=days)
    deleted = asyncio.run(repo.delete_older_than(cutoff, batch_size))
    if vacuum:
        repo.vacuum()
    print(f"Deleted {deleted} log entries older than {days} days")
    return deleted


def serve(db_path: str, yaml_path: str, host: str, port: int) -> None:
    import uvicorn

    os.environ["DB_PATH"] = db_path
    os.environ["FITNESS_SETTINGS"] = yaml_path
    uvicorn.run("rest_api:create_app", host=host, port=port, factory=True)


def trigger_remote(url: str, name: str, api_key: str | None) -> int:
    result = EngineClient(url, api_key=api_key).trigger_job(name)
    print(json.dumps(result, indent=2))
    return 0 if result.get("status") == "success" else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Fitness engine maintenance commands")
    parser.add_argument("--db", default=os.environ.get("DB_PATH", "fitness.db"))
    parser.add_argument("--yaml", default="settings.yaml")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("jobs")

    run = sub.add_parser("run-job")
    run.add_argument("name")

    logs = sub.add_parser("logs")
    logs.add_argument("--job")
    logs.add_argument("--limit", type=int, default=50)

    clean = sub.add_parser("cleanup")
    clean.add_argument("--days", type=int, default=90)
    clean.add_argument("--vacuum", action="store_true")

    srv = sub.add_parser("serve")
    srv.add_argument("--host", default="127.0.0.1")
    srv.add_argument("--port", type=int, default=8000)

    trig = sub.add_parser("trigger")
    trig.add_argument("name")
    trig.add_argument("--url", default="http://localhost:8000")
    trig.add_argument("--api-key", default=None)

    args = parser.parse_args(argv)
    settings = load_settings(args.yaml)
    setup_logging(settings.log_format, settings.log_level)

    if args.cmd == "jobs":
        list_jobs(args.db, args.yaml)
    elif args.cmd == "run-job":
        return run_job(args.db, args.yaml, args.name)
    elif args.cmd == "logs":
        show_logs(args.db, args.yaml, args.job, args.limit)
    elif args.cmd == "cleanup":
        cleanup_logs(args.db, args.days, settings.cleanup_batch_size, args.vacuum)
    elif args.cmd == "serve":
        serve(args.db, args.yaml, args.host, args.port)
    elif args.cmd == "trigger":
        return trigger_remote(args.url, args.name, args.api_key or settings.admin_api_key)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
