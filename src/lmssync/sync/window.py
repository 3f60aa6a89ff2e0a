"""Incremental window: "modified since the last completed sync of this type"."""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlmodel import Session, select

from lmssync.models.sync import SyncLog
from lmssync.timeutil import format_api_datetime

# Ransack-style filter understood by the LMS list endpoints.
UPDATED_SINCE_PARAM = "filter[updated_at][gteq]"


@dataclass(frozen=True)
class IncrementalWindow:
    since: datetime

    def as_params(self) -> Dict[str, str]:
        return {UPDATED_SINCE_PARAM: format_api_datetime(self.since)}


def last_completed_at(engine, entity_type: str) -> Optional[datetime]:
    with Session(engine) as session:
        return session.exec(
            select(SyncLog.completed_at)
            .where(SyncLog.entity_type == entity_type)
            .where(SyncLog.status == "completed")
            .where(SyncLog.completed_at.is_not(None))
            .order_by(SyncLog.completed_at.desc())
            .limit(1)
        ).first()


def resolve_window(engine, entity_type: str) -> Optional[IncrementalWindow]:
    """Return the window for an incremental run, or None to fetch everything.

    Read-only: never touches SyncLog rows.
    """
    since = last_completed_at(engine, entity_type)
    if since is None:
        return None
    return IncrementalWindow(since=since)
