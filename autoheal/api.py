"""
autoheal API Server
===================

FastAPI server exposing the self-healing controller over HTTP:

- read-only recovery log queries for operational dashboards
- failure hook endpoints for job runners living in other processes
- on-demand targeted sweep / sweeper agent runs for the external scheduler

Run directly:
    python -m autoheal.api
    uvicorn autoheal.api:app --host 0.0.0.0 --port 8770

Port configurable via AUTOHEAL_API_PORT environment variable (default 8770).
"""

from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from autoheal.classifier import diagnose, is_retryable
from autoheal.hooks import FailureHooks, get_hooks
from autoheal.recovery_log import EventType, Outcome
from autoheal.utils import now_iso, now_utc, setup_logger

logger = setup_logger("autoheal.api")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

API_PORT = int(os.getenv("AUTOHEAL_API_PORT", "8770"))
API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Pydantic Models -- Requests
# ---------------------------------------------------------------------------


class PipelineFailureRequest(BaseModel):
    item_id: str
    phase: str
    error: str
    attempt_number: Optional[int] = None
    was_rejected: bool = False
    locale: Optional[str] = None
    keyword: Optional[str] = None
    site_id: Optional[str] = None


class CronFailureRequest(BaseModel):
    job_name: str
    error: str
    site_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class PromotionFailureRequest(BaseModel):
    item_id: str
    error: str
    keyword: Optional[str] = None
    site_id: Optional[str] = None


class SweepRequest(BaseModel):
    site_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Pydantic Models -- Responses
# ---------------------------------------------------------------------------


class StatusResponse(BaseModel):
    status: str
    timestamp: str
    subsystems: Dict[str, str] = Field(default_factory=dict)
    version: str = API_VERSION


class AcceptedResponse(BaseModel):
    accepted: bool = True
    target: str


class SweepResponse(BaseModel):
    recovered: int
    site_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Application State
# ---------------------------------------------------------------------------


class AppState:
    """Holds the hooks instance (and through it the stores and log)."""

    def __init__(self) -> None:
        self.hooks: Optional[FailureHooks] = None
        self.start_time: float = 0.0


state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the controller on startup."""
    state.start_time = time.monotonic()
    if state.hooks is None:
        state.hooks = get_hooks()
    logger.info("autoheal API ready (data_dir=%s)", state.hooks.config.data_dir)
    yield
    logger.info("autoheal API shut down")


app = FastAPI(
    title="autoheal API",
    description="Self-healing controller for the multi-site article pipeline.",
    version=API_VERSION,
    lifespan=lifespan,
)


def _require_hooks() -> FailureHooks:
    if state.hooks is None:
        raise HTTPException(503, "Controller not initialized")
    return state.hooks


# ===================================================================
# Health
# ===================================================================


@app.get("/health", response_model=StatusResponse, tags=["Health"])
async def health():
    hooks = _require_hooks()
    uptime = time.monotonic() - state.start_time if state.start_time else 0
    subs = {
        "items": str(hooks.store.count()),
        "recovery_log": str(hooks.log.data_dir),
        "uptime_seconds": f"{uptime:.0f}",
    }
    return StatusResponse(status="ok", timestamp=now_iso(), subsystems=subs)


# ===================================================================
# Recovery log (read-only)
# ===================================================================


@app.get("/recovery-log", tags=["Recovery Log"])
async def recovery_log(
    event_type: Optional[EventType] = None,
    outcome: Optional[Outcome] = None,
    target: Optional[str] = None,
    hours: float = Query(24.0, gt=0),
    limit: int = Query(50, ge=1, le=1000),
) -> List[Dict[str, Any]]:
    """Most recent recovery decisions, newest first."""
    hooks = _require_hooks()
    entries = hooks.log.search(
        event_type=event_type,
        outcome=outcome,
        target=target,
        start_time=now_utc() - timedelta(hours=hours),
        limit=limit,
    )
    return [e.to_dict() for e in entries]


@app.get("/recovery-log/summary", tags=["Recovery Log"])
async def recovery_log_summary(hours: float = Query(24.0, gt=0)) -> Dict[str, Any]:
    return _require_hooks().log.summary(hours=hours)


@app.get("/classify", tags=["Recovery Log"])
async def classify_error(text: str) -> Dict[str, Any]:
    """Dry-run the classifier and diagnosis engine on some failure text."""
    d = diagnose(text)
    return {
        "category": d.category.value,
        "retryable": is_retryable(d.category),
        "reset_phase": d.reset_phase.value,
        "explanation": d.explanation,
        "fix": d.fix_description,
    }


@app.get("/items/{item_id}", tags=["Items"])
async def get_item(item_id: str) -> Dict[str, Any]:
    item = _require_hooks().store.get(item_id)
    if item is None:
        raise HTTPException(404, f"Item {item_id} not found")
    return item.to_dict()


# ===================================================================
# Failure hooks (fire-and-forget)
# ===================================================================


@app.post("/hooks/pipeline-failure", status_code=202, response_model=AcceptedResponse, tags=["Hooks"])
async def pipeline_failure(req: PipelineFailureRequest, background: BackgroundTasks):
    hooks = _require_hooks()
    background.add_task(
        hooks.on_pipeline_failure,
        req.item_id,
        req.phase,
        req.error,
        attempt_number=req.attempt_number,
        was_rejected=req.was_rejected,
        locale=req.locale,
        keyword=req.keyword,
        site_id=req.site_id,
    )
    return AcceptedResponse(target=req.item_id)


@app.post("/hooks/cron-failure", status_code=202, response_model=AcceptedResponse, tags=["Hooks"])
async def cron_failure(req: CronFailureRequest, background: BackgroundTasks):
    hooks = _require_hooks()
    background.add_task(
        hooks.on_cron_failure, req.job_name, req.error, site_id=req.site_id, details=req.details,
    )
    return AcceptedResponse(target=req.job_name)


@app.post("/hooks/promotion-failure", status_code=202, response_model=AcceptedResponse, tags=["Hooks"])
async def promotion_failure(req: PromotionFailureRequest, background: BackgroundTasks):
    hooks = _require_hooks()
    background.add_task(
        hooks.on_promotion_failure, req.item_id, req.error, keyword=req.keyword, site_id=req.site_id,
    )
    return AcceptedResponse(target=req.item_id)


# ===================================================================
# Sweeps
# ===================================================================


@app.post("/sweep", response_model=SweepResponse, tags=["Sweeps"])
async def sweep(req: Optional[SweepRequest] = None):
    site_id = req.site_id if req else None
    recovered = await _require_hooks().sweep(site_id)
    return SweepResponse(recovered=recovered, site_id=site_id)


@app.post("/sweeper/run", tags=["Sweeps"])
async def sweeper_run() -> Dict[str, Any]:
    result = await _require_hooks().agent().run()
    return result.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "autoheal.api:app",
        host="0.0.0.0",
        port=API_PORT,
        reload=False,
        log_level="info",
    )
