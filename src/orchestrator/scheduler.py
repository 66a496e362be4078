"""Periodic maintenance runner: finalization sweep, anomaly scan, counter cleanup, moderation rescan."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session, sessionmaker

from src.battles.finalization import finalize_expired_battles
from src.control.anomalies import detect_anomalies
from src.control.privileged import Actor
from src.control.rate_limiter import cleanup_counters
from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.observability import capture_exception, sentry_scope
from src.identity.oracle import DatabaseIdentityOracle
from src.moderation.service import rescan_unmoderated_comments
from src.orchestrator.locks import MaintenanceLockManager


JOB_FINALIZE_SWEEP = "finalize_sweep"
JOB_ANOMALY_SCAN = "anomaly_scan"
JOB_COUNTER_CLEANUP = "counter_cleanup"
JOB_MODERATION_RESCAN = "moderation_rescan"
DEFAULT_JOBS = (JOB_FINALIZE_SWEEP, JOB_ANOMALY_SCAN, JOB_COUNTER_CLEANUP, JOB_MODERATION_RESCAN)

JobRunner = Callable[[Session, Optional[datetime]], Mapping[str, Any]]

logger = get_logger("arena.orchestrator.scheduler")


@dataclass(frozen=True)
class JobRunSummary:
    job: str
    status: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MaintenanceRunResult:
    executed: int
    skipped_locked: int
    failed: int
    runs: List[JobRunSummary]


def run_finalize_sweep(session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    result = finalize_expired_battles(
        session,
        actor=Actor(user_id=None, is_service=True),
        oracle=DatabaseIdentityOracle(session),
        now=now,
    )
    return {
        "candidates": result.candidates,
        "finalized": result.finalized,
        "noop": result.noop,
        "failed": result.failed,
    }


def run_anomaly_scan(session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    inserted = detect_anomalies(session, now=now)
    session.commit()
    return {"alerts_inserted": inserted}


def run_counter_cleanup(session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    deleted = cleanup_counters(session, now=now)
    session.commit()
    return {"deleted": deleted}


def run_moderation_rescan(session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    moderated = rescan_unmoderated_comments(session, limit=get_settings().moderation_rescan_limit)
    return {"moderated": moderated}


DEFAULT_RUNNERS: Dict[str, JobRunner] = {
    JOB_FINALIZE_SWEEP: run_finalize_sweep,
    JOB_ANOMALY_SCAN: run_anomaly_scan,
    JOB_COUNTER_CLEANUP: run_counter_cleanup,
    JOB_MODERATION_RESCAN: run_moderation_rescan,
}


class MaintenanceScheduler:
    """Run each maintenance job under its own Redis lock and a fresh DB session."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        lock_manager: MaintenanceLockManager,
        runners: Mapping[str, JobRunner] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lock_manager = lock_manager
        self._runners = dict(runners or DEFAULT_RUNNERS)

    @property
    def jobs(self) -> List[str]:
        return list(self._runners)

    def run_once(self, *, jobs: Iterable[str] | None = None, now: Optional[datetime] = None) -> MaintenanceRunResult:
        selected = list(jobs) if jobs is not None else self.jobs

        executed = 0
        skipped_locked = 0
        failed = 0
        runs: List[JobRunSummary] = []

        for job in selected:
            runner = self._runners.get(job)
            if runner is None:
                raise ValueError(f"Unknown maintenance job: {job}")

            lock = self._lock_manager.acquire(job)
            if lock is None:
                skipped_locked += 1
                runs.append(JobRunSummary(job=job, status="skipped_locked", details={"reason": "job_lock_exists"}))
                logger.info("maintenance_job_skipped_locked", job=job)
                continue

            try:
                with sentry_scope(request_id=f"scheduler:{job}"):
                    details = self._run_job(runner, now)
                executed += 1
                runs.append(JobRunSummary(job=job, status="executed", details=details))
                logger.info("maintenance_job_executed", job=job, **details)
            except Exception as exc:
                failed += 1
                runs.append(JobRunSummary(job=job, status="failed", details={"error": str(exc)}))
                capture_exception(exc)
                logger.error("maintenance_job_failed", job=job, error=str(exc))
            finally:
                lock.release()

        return MaintenanceRunResult(executed=executed, skipped_locked=skipped_locked, failed=failed, runs=runs)

    def _run_job(self, runner: JobRunner, now: Optional[datetime]) -> Dict[str, Any]:
        with self._session_factory() as session:
            result = runner(session, now)
            if isinstance(result, Mapping):
                return dict(result)
            return {}
