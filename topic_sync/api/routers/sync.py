"""
Sync Run Endpoints

Start a run, poll its progress, ask it to stop. Runs execute in a worker
thread with their own event loop; stopping sets the run's CancellationToken,
so the run halts after the batch (or page) in flight.

Run state lives in memory and is lost on restart. Only one run may be
active at a time.
"""

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Literal, Optional

import anyio
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from ...cancellation import CancellationToken
from ...config import ConfigError, SyncSettings
from ...db.models import SyncRunSummary
from ...pipeline import resolve_window, run_analyze_only, run_enrich_missing, run_sync
from ..deps import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

_TERMINAL_STATES = {"completed", "stopped", "failed"}
_MAX_TRACKED_RUNS = 50


@dataclass
class ActiveRun:
    run_id: str
    token: CancellationToken
    summary: SyncRunSummary
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> str:
        if self.summary.status == "running" and self.token.cancelled:
            return "stopping"
        return self.summary.status


_active_runs: dict[str, ActiveRun] = {}
_runs_lock = threading.Lock()


class SyncRunRequest(BaseModel):
    mode: Literal["sync", "enrich_missing", "analyze_only"] = "sync"
    day: Optional[date] = None
    days: Optional[int] = Field(default=None, ge=1, le=366)
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    limit: Optional[int] = Field(default=None, ge=1)
    batch_size: Optional[int] = Field(default=None, ge=1, le=50)


class SyncRunResponse(BaseModel):
    run_id: str
    status: str
    message: str


class SyncRunStatus(BaseModel):
    run_id: str
    status: str
    stop_reason: Optional[str] = None
    summary: SyncRunSummary


class SyncStopResponse(BaseModel):
    run_id: str
    status: str
    message: str


def _prune_runs() -> None:
    """Drop the oldest finished runs once too many are tracked."""
    if len(_active_runs) <= _MAX_TRACKED_RUNS:
        return
    finished = sorted(
        (run for run in _active_runs.values() if run.summary.status in _TERMINAL_STATES),
        key=lambda run: run.created_at,
    )
    for run in finished[: len(_active_runs) - _MAX_TRACKED_RUNS]:
        del _active_runs[run.run_id]


async def _run_coroutine(run: ActiveRun, settings: SyncSettings, request: SyncRunRequest, window):
    def on_progress(report: SyncRunSummary) -> None:
        run.summary = report

    if request.mode == "analyze_only":
        return await run_analyze_only(
            settings,
            limit=request.limit,
            cancel_token=run.token,
            date_from=window[0] if window else None,
            date_to=window[1] if window else None,
            on_progress=on_progress,
        )
    if request.mode == "enrich_missing":
        return await run_enrich_missing(
            settings, limit=request.limit, cancel_token=run.token, on_progress=on_progress
        )
    return await run_sync(
        settings, window[0], window[1], limit=request.limit, cancel_token=run.token, on_progress=on_progress
    )


def _execute_run(run: ActiveRun, settings: SyncSettings, request: SyncRunRequest, window) -> None:
    """Worker-thread body: run to completion and record the final summary."""
    try:
        run.summary = asyncio.run(_run_coroutine(run, settings, request, window))
    except Exception as e:
        logger.exception(f"Sync run {run.run_id} failed")
        run.summary.status = "failed"
        run.summary.last_error = str(e)
        run.summary.completed_at = datetime.now(timezone.utc)


async def _run_in_background(run: ActiveRun, settings: SyncSettings, request: SyncRunRequest, window) -> None:
    """Keep the event loop free while the run does blocking work in a thread."""
    await anyio.to_thread.run_sync(
        lambda: _execute_run(run, settings, request, window),
        abandon_on_cancel=True,
    )


@router.post("/runs", response_model=SyncRunResponse)
def start_sync_run(
    request: SyncRunRequest,
    background_tasks: BackgroundTasks,
    settings: SyncSettings = Depends(get_settings),
):
    """
    Start a run in the background.

    **Modes:**
    - **sync**: harvest the window, then enrich (window from day / days / date_from+date_to, default today)
    - **enrich_missing**: enrich every stored record missing fields
    - **analyze_only**: categorize stored transcripts without topics (window optional)

    Use GET /api/sync/runs/{run_id} to follow progress.
    """
    try:
        settings.require(intercom=request.mode != "analyze_only", openai=True)
    except ConfigError as e:
        raise HTTPException(status_code=503, detail=str(e))

    window = None
    has_window = request.day or request.days or request.date_from or request.date_to
    if request.mode == "sync" or has_window:
        try:
            window = resolve_window(request.day, request.days, request.date_from, request.date_to)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

    if request.batch_size is not None:
        settings.batch_size = request.batch_size

    with _runs_lock:
        active = [run.run_id for run in _active_runs.values() if run.summary.status == "running"]
        if active:
            raise HTTPException(
                status_code=409,
                detail=f"Sync run {active[0]} is already in progress. Wait for it to finish or stop it.",
            )
        run = ActiveRun(
            run_id=uuid.uuid4().hex,
            token=CancellationToken(),
            summary=SyncRunSummary(
                mode=request.mode,
                status="running",
                date_from=window[0] if window else None,
                date_to=window[1] if window else None,
                started_at=datetime.now(timezone.utc),
            ),
        )
        _active_runs[run.run_id] = run
        _prune_runs()

    background_tasks.add_task(_run_in_background, run, settings, request, window)
    logger.info(f"Started sync run {run.run_id} ({request.mode})")

    return SyncRunResponse(run_id=run.run_id, status="started", message=f"{request.mode} run started")


@router.get("/runs/{run_id}", response_model=SyncRunStatus)
def get_sync_run(run_id: str):
    """Current progress of a run (live while running, final once done)."""
    run = _active_runs.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Sync run {run_id} not found")
    return SyncRunStatus(run_id=run_id, status=run.status, stop_reason=run.token.reason, summary=run.summary)


@router.post("/runs/{run_id}/stop", response_model=SyncStopResponse)
def stop_sync_run(run_id: str):
    """
    Ask a running run to stop.

    The run finishes the batch or page in flight, commits it, then exits
    with status "stopped".
    """
    run = _active_runs.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Sync run {run_id} not found")
    if run.summary.status in _TERMINAL_STATES:
        return SyncStopResponse(run_id=run_id, status=run.summary.status, message="Run already finished")

    run.token.cancel("stop requested via API")
    logger.info(f"Stop requested for sync run {run_id}")
    return SyncStopResponse(
        run_id=run_id,
        status="stopping",
        message="Stop signal sent. The run will halt after the current batch.",
    )
