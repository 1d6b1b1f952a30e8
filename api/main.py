"""
Segmentation API
================

FastAPI endpoints for invoking segmentation runs.

Usage:
    uvicorn api.main:app --reload

Endpoints:
    POST /runs - Run segmentation on posted order/customer rows
    GET /runs - List persisted run ids
    GET /runs/{run_id} - Fetch the persisted result rows of a run
    GET /health - Health check
"""

import os
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from loguru import logger

from rfm_segments import __version__
from rfm_segments.common import (
    InMemoryRecordSource, InMemoryResultSink, LocalTableSink, load_settings,
    SegmentationError, ConfigurationError, ConcurrencyError, IngestionError, PersistenceError
)
from rfm_segments.pipeline import SegmentationPipeline


def create_sink():
    """Local partitions when SEGMENTS_OUTPUT_DIR is set, otherwise in memory."""
    output_dir = os.getenv("SEGMENTS_OUTPUT_DIR")
    if output_dir:
        return LocalTableSink(output_dir, file_format=os.getenv("SEGMENTS_FORMAT", "csv"))
    return InMemoryResultSink()


# Initialize FastAPI
app = FastAPI(
    title="RFM Segmentation API",
    description="Customer segmentation runs over RFM features",
    version=__version__
)

# Add CORS middleware with environment-based configuration
cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:8080").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.settings = load_settings(os.getenv("SEGMENTS_CONFIG", "config/settings.yaml"))
app.state.sink = create_sink()


# Request/Response models
class RunRequest(BaseModel):
    run_id: str
    as_of_timestamp: str
    k: Optional[int] = None
    random_seed: Optional[int] = None
    max_iterations: Optional[int] = None
    orders: List[Dict[str, Any]] = Field(default_factory=list)
    customers: List[Dict[str, Any]] = Field(default_factory=list)


class RunResponse(BaseModel):
    run_id: str
    rows_ingested: int
    rows_rejected: int
    customers_segmented: int
    converged: bool
    cluster_sizes: List[int]
    n_iter: int
    inertia: float
    as_of: str
    run_timestamp: str
    reject_reasons: Dict[str, int]
    assembly_warnings: List[str]


class HealthResponse(BaseModel):
    status: str
    version: str


def _status_code(exc: SegmentationError) -> int:
    if isinstance(exc, ConfigurationError):
        return 400
    if isinstance(exc, ConcurrencyError):
        return 409
    if isinstance(exc, (IngestionError, PersistenceError)):
        return 503
    return 500


# Health check
@app.get("/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=__version__)


@app.post("/runs", response_model=RunResponse)
def create_run(request: RunRequest):
    """
    Run segmentation over the posted rows.

    Order rows need customer_id, order_id, order_timestamp and order_total;
    customer rows need customer_id. Re-posting a run_id replaces its results.
    """
    source = InMemoryRecordSource(request.orders, request.customers)
    pipeline = SegmentationPipeline(source, app.state.sink, app.state.settings)

    try:
        summary = pipeline.run(
            run_id=request.run_id,
            as_of_timestamp=request.as_of_timestamp,
            k=request.k,
            random_seed=request.random_seed,
            max_iterations=request.max_iterations
        )
    except SegmentationError as exc:
        logger.error(f"Segmentation run {request.run_id} failed: {exc}")
        raise HTTPException(status_code=_status_code(exc), detail=exc.to_dict())

    return RunResponse(**summary.to_dict())


@app.get("/runs")
def list_runs():
    """List run ids with persisted results."""
    return {"runs": app.state.sink.list_runs()}


@app.get("/runs/{run_id}")
def get_run(run_id: str):
    """Return the persisted result rows of a run."""
    try:
        table = app.state.sink.read_partition(run_id)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=exc.to_dict())

    if table.empty:
        raise HTTPException(status_code=404, detail=f"No results for run_id={run_id}")

    table = table.copy()
    table['run_timestamp'] = table['run_timestamp'].astype(str)
    return {
        "run_id": run_id,
        "n_customers": len(table),
        "rows": table.to_dict('records')
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
