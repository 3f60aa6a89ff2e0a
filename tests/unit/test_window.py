"""Tests for the incremental window resolver."""
from datetime import datetime

from sqlmodel import Session, select

from lmssync.models.sync import SyncLog
from lmssync.sync.window import IncrementalWindow, resolve_window


def _log(session, entity_type, status, completed_at):
    session.add(SyncLog(
        entity_type=entity_type,
        status=status,
        started_at=completed_at or datetime(2024, 1, 1),
        completed_at=completed_at,
    ))
    session.commit()


class TestResolveWindow:
    def test_no_history_means_full_fetch(self, engine):
        assert resolve_window(engine, "users") is None

    def test_uses_last_completed_sync(self, engine, test_session):
        _log(test_session, "users", "completed", datetime(2025, 1, 1, 0, 0, 0))

        window = resolve_window(engine, "users")

        assert window == IncrementalWindow(since=datetime(2025, 1, 1))
        assert window.as_params() == {"filter[updated_at][gteq]": "2025-01-01T00:00:00Z"}

    def test_failed_and_running_syncs_ignored(self, engine, test_session):
        _log(test_session, "users", "failed", datetime(2025, 3, 1))
        _log(test_session, "users", "running", None)
        assert resolve_window(engine, "users") is None

    def test_most_recent_completion_wins(self, engine, test_session):
        _log(test_session, "users", "completed", datetime(2025, 1, 1))
        _log(test_session, "users", "completed", datetime(2025, 2, 15, 8, 30))
        _log(test_session, "users", "failed", datetime(2025, 3, 1))
        assert resolve_window(engine, "users").since == datetime(2025, 2, 15, 8, 30)

    def test_other_entity_types_ignored(self, engine, test_session):
        _log(test_session, "groups", "completed", datetime(2025, 1, 1))
        assert resolve_window(engine, "users") is None

    def test_does_not_modify_log(self, engine, test_session):
        _log(test_session, "users", "completed", datetime(2025, 1, 1))
        resolve_window(engine, "users")
        logs = test_session.exec(select(SyncLog)).all()
        assert len(logs) == 1
        assert logs[0].status == "completed"
