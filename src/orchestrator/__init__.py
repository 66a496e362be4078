"""Maintenance scheduling primitives and per-job Redis locks."""

from src.orchestrator.locks import MaintenanceLockManager
from src.orchestrator.scheduler import JobRunSummary, MaintenanceRunResult, MaintenanceScheduler

__all__ = [
    "JobRunSummary",
    "MaintenanceLockManager",
    "MaintenanceRunResult",
    "MaintenanceScheduler",
]
