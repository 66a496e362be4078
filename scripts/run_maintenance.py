"""Run battle arena maintenance jobs from cron or a one-off shell."""

from __future__ import annotations

import argparse
import json
from typing import Any, Dict

from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.observability import init_sentry
from src.orchestrator.locks import MaintenanceLockManager
from src.orchestrator.scheduler import (
    DEFAULT_JOBS,
    JOB_ANOMALY_SCAN,
    JOB_COUNTER_CLEANUP,
    JOB_FINALIZE_SWEEP,
    JOB_MODERATION_RESCAN,
    MaintenanceScheduler,
)
from src.control.rate_limiter import seed_default_rules
from src.storage.db import get_session_factory
from src.storage.redis_client import get_client


COMMAND_JOBS = {
    "sweep": (JOB_FINALIZE_SWEEP,),
    "scan": (JOB_ANOMALY_SCAN,),
    "cleanup": (JOB_COUNTER_CLEANUP,),
    "rescan": (JOB_MODERATION_RESCAN,),
    "run-once": DEFAULT_JOBS,
}

logger = get_logger("arena.scripts.maintenance")


def _seed_rules() -> Dict[str, Any]:
    with get_session_factory()() as session:
        inserted = seed_default_rules(session)
        session.commit()
    return {"inserted": inserted}


def _run_jobs(jobs) -> Dict[str, Any]:
    settings = get_settings()
    scheduler = MaintenanceScheduler(
        session_factory=get_session_factory(),
        lock_manager=MaintenanceLockManager(get_client(), ttl_seconds=settings.scheduler_lock_ttl_seconds),
    )
    result = scheduler.run_once(jobs=jobs)
    return {
        "executed": result.executed,
        "skipped_locked": result.skipped_locked,
        "failed": result.failed,
        "runs": [{"job": run.job, "status": run.status, "details": run.details} for run in result.runs],
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Run battle arena maintenance jobs.")
    parser.add_argument("command", choices=sorted([*COMMAND_JOBS, "seed-rules"]))
    args = parser.parse_args()

    init_sentry()
    if args.command == "seed-rules":
        report = _seed_rules()
    else:
        report = _run_jobs(COMMAND_JOBS[args.command])

    logger.info("maintenance_command_completed", command=args.command)
    print(json.dumps(report, sort_keys=True, default=str))
    if report.get("failed"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
