"""
Named lifecycle jobs for external schedulers.

A scheduler (cron, systemd timers, an orchestrator) triggers jobs by name:

    ilm job refresh
    ilm job evaluate
    ilm job execute --scheduled

run_job() records one ilm_job_runs row per run and never raises, so the
caller's only contract is the returned JobRun and the stored status. A job
that finishes with per-item errors (failed actions, policies or partitions)
is stored as PARTIAL, and failed_runs() reports it alongside FAILED runs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable

import pandas as pd
from loguru import logger

from ilm.data.catalog import ObjectCatalog
from ilm.data.db import get_db
from ilm.data.schema import ensure_schema
from ilm.lifecycle.audit import AuditLog
from ilm.lifecycle.evaluation import EvaluationEngine
from ilm.lifecycle.execution import ExecutionEngine
from ilm.lifecycle.merge import PartitionMerger
from ilm.lifecycle.settings import LifecycleConfig, load_config
from ilm.lifecycle.tracker import PartitionTracker


class JobStatus(Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


def refresh_job(db_path: str | None, config: LifecycleConfig, scheduled: bool = False) -> dict[str, Any]:
    results = PartitionTracker(db_path).refresh_all(config=config)
    return {
        "objects": len(results),
        "partitions_tracked": sum(r.partitions_tracked for r in results),
        "errors": [e for r in results for e in r.errors],
    }


def evaluate_job(db_path: str | None, config: LifecycleConfig, scheduled: bool = False) -> dict[str, Any]:
    summary = EvaluationEngine(db_path).evaluate_all(config=config)
    return {
        "policies_evaluated": summary.policies_evaluated,
        "policies_failed": summary.policies_failed,
        "total_eligible": summary.total_eligible,
        "errors": summary.errors,
    }


def execute_job(db_path: str | None, config: LifecycleConfig, scheduled: bool = False) -> dict[str, Any]:
    report = ExecutionEngine(db_path).execute(scheduled=scheduled, config=config)
    return {
        "run_id": report.run_id,
        "succeeded": report.succeeded,
        "failed": report.failed,
        "stopped_reason": report.stopped_reason,
        "errors": report.errors,
    }


def consolidate_job(db_path: str | None, config: LifecycleConfig, scheduled: bool = False) -> dict[str, Any]:
    catalog = ObjectCatalog(db_path)
    merger = PartitionMerger(db_path, catalog=catalog)
    results = [
        merger.consolidate(obj.owner, obj.object_name, config=config)
        for obj in catalog.list_objects(partitioned_only=True)
    ]
    return {
        "objects": len(results),
        "merged": sum(r.merged for r in results),
        "skipped": sum(r.skipped for r in results),
        "failed": sum(r.failed for r in results),
        "errors": [e for r in results for e in r.errors],
    }


def cleanup_logs_job(db_path: str | None, config: LifecycleConfig, scheduled: bool = False) -> dict[str, Any]:
    return AuditLog(db_path).cleanup(config.log_retention_days).to_dict()


JOBS: dict[str, Callable[..., dict[str, Any]]] = {
    "refresh": refresh_job,
    "evaluate": evaluate_job,
    "execute": execute_job,
    "consolidate": consolidate_job,
    "cleanup_logs": cleanup_logs_job,
}


@dataclass
class JobRun:
    """One recorded job run."""

    run_id: int
    job_name: str
    started_at: datetime
    finished_at: datetime | None = None
    status: str = JobStatus.RUNNING.value
    error_message: str | None = None
    summary: dict[str, Any] | None = None

    @property
    def success(self) -> bool:
        return self.status == JobStatus.SUCCESS.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "job_name": self.job_name,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status,
            "error_message": self.error_message,
            "summary": self.summary,
        }


def run_job(name: str, db_path: str | None = None, scheduled: bool = False) -> JobRun:
    """
    Run a named job and record its outcome.

    Unknown names, configuration errors and job failures are all stored as
    FAILED runs rather than raised. A job that completes but reports
    per-item errors is stored as PARTIAL.

    Args:
        name: Key of JOBS
        db_path: Optional database path
        scheduled: Passed to the job; execute applies the window and
            auto-execution flag when set

    Returns:
        The recorded JobRun
    """
    db = get_db(db_path)
    ensure_schema(db)
    started_at = datetime.now()

    with db.transaction() as conn:
        run_id = conn.execute("SELECT COALESCE(MAX(run_id), 0) + 1 FROM ilm_job_runs").fetchone()[0]
        conn.execute(
            "INSERT INTO ilm_job_runs (run_id, job_name, started_at, status) VALUES (?, ?, ?, ?)",
            (run_id, name, started_at, JobStatus.RUNNING.value),
        )

    run = JobRun(run_id=run_id, job_name=name, started_at=started_at)
    logger.info(f"Job {name} started (run {run_id})")

    try:
        job = JOBS.get(name)
        if job is None:
            raise KeyError(f"Unknown job: {name}. Available: {', '.join(JOBS)}")
        config = load_config(db_path)
        run.summary = job(db_path, config, scheduled=scheduled)
        if run.summary.get("errors"):
            run.status = JobStatus.PARTIAL.value
            logger.warning(f"Job {name} finished with {len(run.summary['errors'])} errors")
        else:
            run.status = JobStatus.SUCCESS.value
    except Exception as e:
        run.status = JobStatus.FAILED.value
        run.error_message = str(e)
        logger.error(f"Job {name} failed: {e}")

    run.finished_at = datetime.now()
    db.execute(
        """
        UPDATE ilm_job_runs
        SET finished_at = ?, status = ?, error_message = ?, summary = ?
        WHERE run_id = ?
        """,
        (
            run.finished_at,
            run.status,
            run.error_message,
            json.dumps(run.summary, default=str) if run.summary is not None else None,
            run_id,
        ),
    )
    logger.info(f"Job {name} finished: {run.status}")
    return run


def last_runs(db_path: str | None = None) -> pd.DataFrame:
    """Most recent run of every job name."""
    db = get_db(db_path)
    ensure_schema(db)
    return db.fetchdf(
        """
        SELECT run_id, job_name, started_at, finished_at, status, error_message, summary
        FROM ilm_job_runs
        QUALIFY ROW_NUMBER() OVER (PARTITION BY job_name ORDER BY run_id DESC) = 1
        ORDER BY job_name
        """
    )


def failed_runs(since: datetime, db_path: str | None = None) -> pd.DataFrame:
    """FAILED and PARTIAL runs started at or after `since`, newest first."""
    db = get_db(db_path)
    ensure_schema(db)
    return db.fetchdf(
        """
        SELECT run_id, job_name, started_at, finished_at, status, error_message
        FROM ilm_job_runs
        WHERE status IN ('FAILED', 'PARTIAL') AND started_at >= ?
        ORDER BY run_id DESC
        """,
        (since,),
    )
