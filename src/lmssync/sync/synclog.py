"""SyncLog writes and readers."""
import json
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from lmssync.models.sync import SyncLog
from lmssync.timeutil import utcnow

MAX_ERROR_LENGTH = 1000


def create_sync_log(engine, entity_type: str, mode: str) -> SyncLog:
    log = SyncLog(entity_type=entity_type, mode=mode, status="running", started_at=utcnow())
    with Session(engine) as s:
        s.add(log)
        s.commit()
        s.refresh(log)
    return log


def finish_sync_log(
    engine,
    log_id: int,
    *,
    status: str,
    processed: int = 0,
    created: int = 0,
    updated: int = 0,
    failed: int = 0,
    error_message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> SyncLog:
    """Move a running log to its terminal status. Long messages are truncated."""
    if error_message and len(error_message) > MAX_ERROR_LENGTH:
        error_message = error_message[:MAX_ERROR_LENGTH - 3] + "..."
    with Session(engine) as s:
        log = s.get(SyncLog, log_id)
        log.status = status
        log.completed_at = utcnow()
        log.records_processed = processed
        log.records_created = created
        log.records_updated = updated
        log.records_failed = failed
        log.error_message = error_message
        log.details_json = json.dumps(details, default=str) if details else None
        s.add(log)
        s.commit()
        s.refresh(log)
    return log


def log_to_dict(log: SyncLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "entityType": log.entity_type,
        "mode": log.mode,
        "status": log.status,
        "startedAt": log.started_at.isoformat() if log.started_at else None,
        "completedAt": log.completed_at.isoformat() if log.completed_at else None,
        "recordsProcessed": log.records_processed,
        "recordsCreated": log.records_created,
        "recordsUpdated": log.records_updated,
        "recordsFailed": log.records_failed,
        "errorMessage": log.error_message,
        "details": json.loads(log.details_json) if log.details_json else None,
    }


def get_last_sync_status(engine) -> Optional[SyncLog]:
    """Most recently started sync of any type."""
    with Session(engine) as s:
        return s.exec(
            select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(1)
        ).first()


def get_sync_history(engine, limit: int = 10, entity_type: Optional[str] = None) -> List[SyncLog]:
    with Session(engine) as s:
        stmt = select(SyncLog)
        if entity_type:
            stmt = stmt.where(SyncLog.entity_type == entity_type)
        return list(s.exec(stmt.order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)).all())
