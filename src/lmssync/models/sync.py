"""Sync audit log model."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from lmssync.timeutil import utcnow


class SyncLog(SQLModel, table=True):
    """One row per entity-type sync run.

    Created with status "running" when the run starts and updated exactly
    once when it completes or fails. Never deleted by the sync engine.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(index=True)  # "users", "groups", "enrollments", ...
    mode: str = "full"  # "full" or "incremental"
    status: str = Field(default="running", index=True)  # "running", "completed", "failed"
    started_at: datetime = Field(default_factory=utcnow, index=True)
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None
    details_json: Optional[str] = None
