"""Sync trigger, status and history routes."""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from lmssync.errors import ConfigurationError, SyncConflictError
from lmssync.sync.orchestrator import SyncOrchestrator, get_orchestrator
from lmssync.sync.synclog import get_last_sync_status, get_sync_history, log_to_dict

router = APIRouter()


class SyncStartedResponse(BaseModel):
    message: str
    logId: Optional[int]
    mode: str
    status: str = "running"


def _conflict(exc: SyncConflictError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "error": "Sync already in progress",
            "currentSync": exc.current,
            "hint": exc.hint,
        },
    )


@router.post("/full", response_model=SyncStartedResponse)
async def trigger_full_sync(
    background_tasks: BackgroundTasks,
    mode: str = "full",
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Run every entity sync in dependency order under one lock.
    Returns immediately; the chain runs in the background.
    """
    try:
        chain = orchestrator.begin_chain(mode)
    except SyncConflictError as exc:
        return _conflict(exc)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    background_tasks.add_task(orchestrator.execute_chain, chain)
    return SyncStartedResponse(message="Full sync chain started", logId=None, mode=mode)


@router.get("/status")
async def sync_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Current lock slot (stale slots are cleared first) and API health."""
    current = orchestrator.lock.snapshot()
    try:
        health = orchestrator.client.health()
    except ConfigurationError:
        health = None
    return {"isRunning": current is not None, "currentSync": current, "apiHealth": health}


@router.post("/reset")
async def reset_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Force-clear the sync lock after a crash. The cleared run is cancelled."""
    previous = orchestrator.lock.force_clear()
    return {"message": "Sync lock cleared", "previousSync": previous}


@router.get("/history")
async def sync_history(
    limit: int = Query(10, ge=1, le=100),
    entity_type: Optional[str] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    return [log_to_dict(log) for log in get_sync_history(orchestrator.engine, limit, entity_type)]


@router.get("/last")
async def last_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Return the most recently started sync, or status never_run."""
    log = get_last_sync_status(orchestrator.engine)
    if log is None:
        return {"status": "never_run"}
    return log_to_dict(log)


@router.post("/{entity_type}", response_model=SyncStartedResponse)
async def trigger_sync(
    entity_type: str,
    background_tasks: BackgroundTasks,
    mode: str = "full",
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Start one entity-type sync (users, groups, courses, course-properties,
    group-memberships, enrollments). Returns immediately with the log id;
    the sync runs in the background.
    """
    try:
        run = orchestrator.begin(entity_type, mode)
    except SyncConflictError as exc:
        return _conflict(exc)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    background_tasks.add_task(orchestrator.execute, run)
    return SyncStartedResponse(
        message=f"{entity_type} sync started", logId=run.log_id, mode=mode,
    )
