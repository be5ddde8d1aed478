"""FastAPI ops server with health and lifecycle rollup endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from ilm.lifecycle import jobs, reports
from ilm.utils.startup import validate_startup


def create_app(db_path: str | None = None) -> FastAPI:
    """Create FastAPI application for ops endpoints."""
    app = FastAPI(
        title="ILM Ops",
        description="Health and lifecycle endpoints for ILM",
        version="1.0.0",
    )

    @app.get("/health")
    def health():
        """Liveness probe - returns 200 if API is responsive."""
        return {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
        }

    @app.get("/ready")
    def ready():
        """Readiness probe - database reachable and DEFAULT profile present."""
        errors = validate_startup(db_path)
        body = {
            "status": "ready" if not errors else "not_ready",
            "errors": errors,
            "timestamp": datetime.now().isoformat(),
        }
        return JSONResponse(body, status_code=200 if not errors else 503)

    @app.get("/summary")
    def summary(days: int = Query(7, ge=1)):
        return reports.generate_summary(days=days, db_path=db_path)

    @app.get("/executions")
    def executions(days: int = Query(30, ge=1)):
        return {
            "days": days,
            "policies": reports.to_records(reports.execution_stats(days, db_path=db_path)),
        }

    @app.get("/merges")
    def merges():
        return {"objects": reports.to_records(reports.merge_stats(db_path))}

    @app.get("/jobs")
    def job_runs():
        return {"jobs": reports.to_records(jobs.last_runs(db_path))}

    return app


def run_server(host: str = "0.0.0.0", port: int = 8080, db_path: str | None = None) -> None:
    """Run the ops server with uvicorn."""
    import uvicorn

    app = create_app(db_path)
    uvicorn.run(app, host=host, port=port)
