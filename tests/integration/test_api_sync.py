"""Integration tests for /sync routes."""
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from conftest import person
from lmssync.api.main import create_app
from lmssync.config import Settings
from lmssync.db.engine import get_engine
from lmssync.models.lms import LmsUser
from lmssync.models.sync import SyncLog
from lmssync.sync.orchestrator import SyncOrchestrator, get_orchestrator


@pytest.fixture(name="client")
def client_fixture(engine, orchestrator):
    app = create_app()
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as c:
        yield c


@pytest.fixture
def no_background():
    """Keep background runs from executing so the lock stays held."""
    with patch.object(SyncOrchestrator, "execute", new=AsyncMock()) as execute, \
            patch.object(SyncOrchestrator, "execute_chain", new=AsyncMock()) as execute_chain:
        yield execute, execute_chain


class TestTriggerRoutes:
    def test_trigger_returns_log_id(self, client, engine, no_background):
        resp = client.post("/sync/users")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "running"
        assert body["mode"] == "full"
        assert "started" in body["message"]
        with Session(engine) as s:
            log = s.get(SyncLog, body["logId"])
            assert log.entity_type == "users"
            assert log.status == "running"

    def test_trigger_schedules_execute(self, client, no_background):
        execute, _ = no_background
        client.post("/sync/groups?mode=incremental")
        execute.assert_awaited_once()
        run = execute.await_args.args[0]
        assert (run.entity_type, run.mode) == ("groups", "incremental")

    def test_second_trigger_conflicts(self, client, no_background):
        client.post("/sync/users")

        resp = client.post("/sync/groups")

        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "Sync already in progress"
        assert body["currentSync"]["type"] == "users"
        assert body["currentSync"]["status"] == "running"
        assert "/sync/reset" in body["hint"]

    def test_unknown_entity_is_400(self, client, engine):
        resp = client.post("/sync/widgets")
        assert resp.status_code == 400
        assert "widgets" in resp.json()["detail"]

    def test_unsupported_mode_is_400(self, client):
        resp = client.post("/sync/group-memberships?mode=incremental")
        assert resp.status_code == 400

    def test_missing_api_key_is_400(self, engine):
        app = create_app()
        app.dependency_overrides[get_orchestrator] = lambda: SyncOrchestrator(
            engine, Settings(lms_api_key=""),
        )
        with TestClient(app) as c:
            resp = c.post("/sync/users")
        assert resp.status_code == 400

    def test_full_chain_started(self, client, no_background):
        _, execute_chain = no_background
        resp = client.post("/sync/full")
        assert resp.status_code == 200
        assert resp.json()["logId"] is None
        execute_chain.assert_awaited_once()

    def test_full_chain_conflicts_with_running_sync(self, client, no_background):
        client.post("/sync/users")
        resp = client.post("/sync/full")
        assert resp.status_code == 409

    def test_background_run_completes(self, client, engine, fake_lms):
        fake_lms.collections["/v2/people"] = [person("u1"), person("u2")]

        resp = client.post("/sync/users")

        with Session(engine) as s:
            log = s.get(SyncLog, resp.json()["logId"])
            assert log.status == "completed"
            assert log.records_processed == 2
            assert s.get(LmsUser, "u1") is not None
        assert client.get("/sync/status").json()["isRunning"] is False


class TestStatusRoutes:
    def test_status_idle(self, client):
        resp = client.get("/sync/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["isRunning"] is False
        assert body["currentSync"] is None
        assert body["apiHealth"]["status"] == "healthy"

    def test_status_while_running(self, client, no_background):
        client.post("/sync/courses")
        body = client.get("/sync/status").json()
        assert body["isRunning"] is True
        assert body["currentSync"]["type"] == "courses"
        assert body["currentSync"]["startedAt"].endswith("Z")

    def test_status_clears_stale_lock(self, client, clock, no_background):
        client.post("/sync/courses")
        clock.advance(31 * 60)
        assert client.get("/sync/status").json()["isRunning"] is False

    def test_reset_clears_lock(self, client, no_background):
        client.post("/sync/users")

        resp = client.post("/sync/reset")

        assert resp.status_code == 200
        assert resp.json()["previousSync"]["type"] == "users"
        assert client.post("/sync/groups").status_code == 200

    def test_reset_when_idle(self, client):
        resp = client.post("/sync/reset")
        assert resp.status_code == 200
        assert resp.json()["previousSync"] is None

    def test_last_never_run(self, client):
        resp = client.get("/sync/last")
        assert resp.status_code == 200
        assert resp.json() == {"status": "never_run"}

    def test_last_returns_most_recent(self, client, engine):
        with Session(engine) as s:
            s.add(SyncLog(entity_type="users", status="completed",
                          started_at=datetime(2025, 1, 15, 2, 0),
                          completed_at=datetime(2025, 1, 15, 2, 5), records_processed=12))
            s.add(SyncLog(entity_type="groups", status="failed",
                          started_at=datetime(2025, 1, 16, 2, 0), error_message="boom"))
            s.commit()
        body = client.get("/sync/last").json()
        assert body["entityType"] == "groups"
        assert body["status"] == "failed"
        assert body["errorMessage"] == "boom"

    def test_history_filtered_and_limited(self, client, engine):
        with Session(engine) as s:
            for day in range(1, 6):
                s.add(SyncLog(entity_type="users", status="completed",
                              started_at=datetime(2025, 1, day, 2, 0)))
            s.add(SyncLog(entity_type="courses", status="completed",
                          started_at=datetime(2025, 1, 9, 2, 0)))
            s.commit()

        body = client.get("/sync/history?entity_type=users&limit=3").json()

        assert len(body) == 3
        assert all(row["entityType"] == "users" for row in body)
        assert body[0]["startedAt"].startswith("2025-01-05")

    def test_history_limit_validated(self, client):
        assert client.get("/sync/history?limit=0").status_code == 422
        assert client.get("/sync/history?limit=101").status_code == 422
