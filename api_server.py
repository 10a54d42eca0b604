# ========================
# api_server.py
# ========================

"""
FastAPI Server for the Layered Trade Pipeline

Provides REST endpoints to trigger pipeline runs, follow their state, cancel
them, inspect the recurring schedule and query the client investment summary.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from src.pipeline import (
    ClientInvestmentQuery,
    ConcurrentRunError,
    NotFoundError,
    PipelineOrchestrator,
    StorageIOError,
    build_orchestrators,
)
from src.pipeline.scheduler import describe_schedule, shutdown_scheduler, start_scheduler
from src.utils.config import Config
from src.utils.logging_setup import setup_logging
from src.utils.performance_monitor import SystemResourceMonitor

logger = logging.getLogger(__name__)

# Constants
PIPELINE_NOT_FOUND_MSG = "Pipeline not found"
RUN_NOT_FOUND_MSG = "Run not found"


def _serialize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Render decimals as strings so totals survive JSON exactly."""
    return {k: str(v) if isinstance(v, Decimal) else v for k, v in row.items()}


def create_app(config: Optional[Config] = None,
               orchestrators: Optional[Dict[str, PipelineOrchestrator]] = None,
               enable_scheduler: bool = True) -> FastAPI:
    """
    Build the API application.

    Args:
        config (Config): Configuration object
        orchestrators (dict): Pipeline name -> orchestrator; built from config when omitted
        enable_scheduler (bool): Start the recurring scheduler with the app

    Returns:
        FastAPI: The application
    """
    config = config or Config()
    config.ensure_directories()
    orchestrators = orchestrators if orchestrators is not None else build_orchestrators(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if enable_scheduler:
            start_scheduler(orchestrators, config)
        yield
        if enable_scheduler:
            shutdown_scheduler()
        for orchestrator in orchestrators.values():
            orchestrator.shutdown(wait=False)

    app = FastAPI(
        title="Trade Pipeline API",
        description="Run the layered trade pipeline and query client investment summaries",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_orchestrator(name: str) -> PipelineOrchestrator:
        if name not in orchestrators:
            raise HTTPException(status_code=404, detail=PIPELINE_NOT_FOUND_MSG)
        return orchestrators[name]

    def find_run(run_id: str):
        for orchestrator in orchestrators.values():
            run = orchestrator.get_run(run_id)
            if run is not None:
                return orchestrator, run
        raise HTTPException(status_code=404, detail=RUN_NOT_FOUND_MSG)

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "message": "Trade Pipeline API",
            "version": "1.0.0",
            "pipelines": sorted(orchestrators),
            "endpoints": {
                "trigger": "POST /pipelines/{name}/runs - Start a run now",
                "runs": "GET /runs - List runs",
                "status": "GET /runs/{run_id} - Run state",
                "cancel": "POST /runs/{run_id}/cancel - Cancel a run",
                "summary": "GET /pipelines/{name}/client-investments - Query the summary layer",
                "schedule": "GET /schedule - Recurring schedule",
                "health": "GET /health - Health check",
                "api_docs": "/docs - API documentation"
            }
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "active_runs": {
                name: o.active_run().run_id
                for name, o in orchestrators.items()
                if o.active_run() is not None
            },
            "system": SystemResourceMonitor.get_system_stats(),
        }

    @app.post("/pipelines/{name}/runs", status_code=202)
    async def trigger_run(name: str):
        """
        Start a pipeline run on the background worker.

        Returns:
            dict: The queued run record
        """
        orchestrator = get_orchestrator(name)
        try:
            run = orchestrator.trigger("manual")
        except ConcurrentRunError as e:
            raise HTTPException(status_code=409, detail=str(e))

        logger.info(f"Started run {run.run_id} for pipeline '{name}' via API")
        return {
            **run.to_dict(),
            "message": "Pipeline run started.",
            "status_url": f"/runs/{run.run_id}",
        }

    @app.get("/runs")
    async def list_runs(
        pipeline: Optional[str] = Query(None, description="Only runs of this pipeline"),
        status: Optional[str] = Query(None, description="Filter by state: idle, ingesting, cleaning, aggregating, succeeded, failed"),
        limit: int = Query(50, description="Maximum number of runs to return", ge=1, le=200)
    ):
        """List pipeline runs, newest first."""
        selected = [get_orchestrator(pipeline)] if pipeline else list(orchestrators.values())
        runs = [r for o in selected for r in o.list_runs(status=status, limit=limit)]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        runs = runs[:limit]
        return {
            "runs": [r.to_dict() for r in runs],
            "filtered_count": len(runs),
        }

    @app.get("/runs/{run_id}")
    async def get_run_status(run_id: str):
        """Get the state of a run and, once finished, its results or error."""
        _, run = find_run(run_id)
        return run.to_dict()

    @app.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str):
        """Request cancellation of an in-progress run."""
        orchestrator, run = find_run(run_id)
        if not orchestrator.cancel(run_id):
            raise HTTPException(status_code=400, detail=f"Run {run_id} is not in progress")
        return {"run_id": run_id, "cancel_requested": True, "state": run.state.value}

    @app.get("/pipelines/{name}/client-investments")
    async def query_client_investments(
        name: str,
        client_id: Optional[str] = Query(None, description="Only this client"),
        region: Optional[str] = Query(None, description="Only clients in this region")
    ):
        """Return the current client investment summary snapshot."""
        query = ClientInvestmentQuery(get_orchestrator(name).store)
        try:
            rows, snapshot = query.query_with_snapshot(client_id=client_id, region=region)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except StorageIOError as e:
            logger.error(f"Summary query failed for '{name}': {e}")
            raise HTTPException(status_code=503, detail=str(e))

        return {
            "pipeline": name,
            "published_at": snapshot['modified_at'],
            "count": len(rows),
            "client_investments": [_serialize_row(r) for r in rows],
        }

    @app.get("/schedule")
    async def get_schedule():
        """Inspect the recurring scheduler."""
        return describe_schedule()

    return app


def start_server(host: Optional[str] = None, port: Optional[int] = None, reload: bool = False):
    """Start the FastAPI server."""
    config = Config()
    setup_logging(log_level=config.LOG_LEVEL, log_file="api.log", log_dir=config.LOG_DIR)
    host = host or config.API_HOST
    port = port or config.API_PORT
    logger.info(f"Starting Trade Pipeline API server on {host}:{port}")
    uvicorn.run(
        "api_server:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


if __name__ == "__main__":
    start_server()
