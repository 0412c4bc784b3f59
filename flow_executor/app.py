"""
Flow Executor Service

A Python microservice that runs action flows authored in the visual builder.

Architecture:
- FastAPI HTTP server for REST API endpoints
- In-process graph executor (no durable state; runs live in memory)
- Dapr secret store for `{{secrets.*}}` / `{{env.*}}` bindings (opt-in)
- Dapr pub/sub for the publish-event action
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from flow_executor.core.config import config
from flow_executor.core.context import RunJournal
from flow_executor.core.errors import FlowValidationError
from flow_executor.core.graph import find_problems, validate_flow
from flow_executor.core.types import FlowDocument, RunOutcome, RunStatus
from flow_executor.workflows.graph_executor import GraphExecutor

# Configuration from centralized config module
PORT = config.PORT
HOST = config.HOST
LOG_LEVEL = config.LOG_LEVEL

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

executor = GraphExecutor()


@dataclass
class RunRecord:
    """A background run tracked by this process."""
    journal: RunJournal
    task: asyncio.Task


# runId -> record, in start order; lost on restart
_runs: dict[str, RunRecord] = {}


# --- Lifecycle ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log startup settings and drain in-flight runs on shutdown."""
    logger.info("=== Flow Executor Service (Python) ===")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info(f"[Flow Executor] Registered node kinds: {', '.join(executor.registry.kinds())}")

    yield

    pending = [r for r in _runs.values() if not r.task.done()]
    for record in pending:
        record.journal.cancel()
    if pending:
        logger.info(f"[Flow Executor] Waiting for {len(pending)} run(s) to stop")
        await asyncio.gather(*(r.task for r in pending), return_exceptions=True)
    logger.info("[Flow Executor] Stopped")


# Create FastAPI app
app = FastAPI(
    title="Flow Executor",
    description="Interpreter for action flows built in the visual builder",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


# --- Request / Response Models ---

class RunFlowRequest(BaseModel):
    """Request to run a flow."""
    flow: FlowDocument
    triggerData: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    env: dict[str, Any] = Field(default_factory=dict)


class ValidateFlowResponse(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class StartRunResponse(BaseModel):
    """Response from starting a background run."""
    runId: str
    status: RunStatus = RunStatus.RUNNING


class RunStatusResponse(BaseModel):
    runId: str
    status: RunStatus
    failedNodeIds: list[str] = Field(default_factory=list)
    outcome: RunOutcome | None = None
    error: str | None = None


# --- Helper Functions ---

def _validate_or_422(flow: FlowDocument):
    try:
        return validate_flow(flow)
    except FlowValidationError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.problems})


def _prune_finished_runs() -> None:
    """Drop the oldest finished runs beyond MAX_FINISHED_RUNS; running ones stay."""
    finished = [run_id for run_id, record in _runs.items() if record.task.done()]
    excess = len(finished) - config.MAX_FINISHED_RUNS
    for run_id in finished[:max(excess, 0)]:
        del _runs[run_id]
    if excess > 0:
        logger.info(f"[Flow Routes] Evicted {excess} finished run(s)")


def _get_record(run_id: str) -> RunRecord:
    record = _runs.get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return record


# --- Routes ---

@app.post("/api/v1/flows/validate", response_model=ValidateFlowResponse)
def validate_flow_document(flow: FlowDocument):
    """
    Check a flow document without running it.

    POST /api/v1/flows/validate
    """
    problems = find_problems(flow)
    return ValidateFlowResponse(valid=not problems, errors=problems)


@app.post("/api/v1/flows/run", response_model=RunOutcome)
async def run_flow(request: RunFlowRequest):
    """
    Run a flow to completion and return its outcome.

    POST /api/v1/flows/run
    """
    graph = _validate_or_422(request.flow)
    logger.info(f"[Flow Routes] Running flow for component {request.flow.componentId or '-'}")
    return await executor.run(
        graph,
        trigger_data=request.triggerData,
        flow_variables=request.variables,
        env=request.env,
    )


@app.post("/api/v1/runs", response_model=StartRunResponse)
async def start_run(request: RunFlowRequest):
    """
    Start a flow in the background.

    POST /api/v1/runs
    """
    graph = _validate_or_422(request.flow)
    _prune_finished_runs()
    journal = RunJournal(run_id=str(uuid.uuid4()))

    task = asyncio.create_task(executor.run(
        graph,
        trigger_data=request.triggerData,
        flow_variables=request.variables,
        env=request.env,
        journal=journal,
    ))
    _runs[journal.run_id] = RunRecord(journal=journal, task=task)

    logger.info(f"[Flow Routes] Started run {journal.run_id}")
    return StartRunResponse(runId=journal.run_id)


@app.get("/api/v1/runs/{run_id}", response_model=RunStatusResponse)
def get_run(run_id: str):
    """
    Get the status of a background run, with its outcome once finished.

    GET /api/v1/runs/:runId
    """
    record = _get_record(run_id)
    journal = record.journal

    if not record.task.done():
        return RunStatusResponse(
            runId=run_id,
            status=RunStatus.RUNNING,
            failedNodeIds=list(journal.failed_node_ids),
        )

    if record.task.cancelled():
        return RunStatusResponse(runId=run_id, status=RunStatus.CANCELLED)

    error = record.task.exception()
    if error is not None:
        logger.error(f"[Flow Routes] Run {run_id} crashed: {error}")
        return RunStatusResponse(
            runId=run_id,
            status=RunStatus.FAILED,
            failedNodeIds=list(journal.failed_node_ids),
            error=str(error),
        )

    outcome = record.task.result()
    return RunStatusResponse(
        runId=run_id,
        status=outcome.status,
        failedNodeIds=outcome.failedNodeIds,
        outcome=outcome,
    )


@app.post("/api/v1/runs/{run_id}/cancel")
async def cancel_run(run_id: str):
    """
    Raise a run's cancellation signal. In-flight node invocations finish;
    no new node starts.

    POST /api/v1/runs/:runId/cancel
    """
    record = _get_record(run_id)
    logger.info(f"[Flow Routes] Cancelling run {run_id}")
    record.journal.cancel()
    return {"success": True, "runId": run_id}


@app.get("/healthz")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "flow-executor"}


# Entry point for uvicorn
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=HOST, port=PORT)
