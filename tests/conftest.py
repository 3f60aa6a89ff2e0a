"""Shared test fixtures."""
from typing import Any, Dict, Generator, List, Optional, Tuple

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from lmssync.models.lms import (  # noqa: F401
    CourseProperty, LmsCourse, LmsEnrollment, LmsGroup, LmsGroupMember, LmsUser, Partner,
)
from lmssync.models.sync import SyncLog  # noqa: F401
from lmssync.config import Settings
from lmssync.lms.client import LmsClient
from lmssync.sync.lock import SyncLock
from lmssync.sync.orchestrator import SyncOrchestrator

BASE_URL = "https://lms.test"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


# ─── Fake LMS API ─────────────────────────────────────────────────────────────

def person(pid: str, email: Optional[str] = None, updated_at: str = "2025-01-01T00:00:00Z",
           last_active_at: Optional[str] = None, deactivated_at: Optional[str] = None) -> Dict:
    return {
        "id": pid,
        "type": "people",
        "attributes": {
            "email": email if email is not None else f"{pid}@example.com",
            "first_name": pid.title(),
            "last_name": "Tester",
            "created_at": "2024-06-01T12:00:00Z",
            "updated_at": updated_at,
            "last_active_at": last_active_at,
            "deactivated_at": deactivated_at,
        },
    }


def group(gid: str, name: str, user_count: int = 0, updated_at: str = "2025-01-01T00:00:00Z") -> Dict:
    return {
        "id": gid,
        "type": "groups",
        "attributes": {"name": name, "user_count": user_count, "updated_at": updated_at},
    }


def course(cid: str, name: str, updated_at: str = "2025-01-01T00:00:00Z") -> Dict:
    return {
        "id": cid,
        "type": "courses",
        "attributes": {"name": name, "status": "live", "updated_at": updated_at},
    }


def course_properties(cid: str, npcu: Any, name: Optional[str] = None) -> Dict:
    props = {"npcu": npcu}
    if name:
        props["name"] = name
    return {"id": cid, "type": "course_properties", "attributes": {"properties": props}}


def membership(mid: str, person_id: str) -> Dict:
    return {
        "id": mid,
        "type": "memberships",
        "relationships": {"person": {"data": {"id": person_id, "type": "people"}}},
    }


def transcript(tid: str, course_id: str, status: str = "in_progress",
               resource_type: str = "course") -> Dict:
    return {
        "id": tid,
        "type": "transcripts",
        "attributes": {
            "resource_id": course_id,
            "resource_type": resource_type,
            "progress_status": status,
            "enrolled_at": "2025-01-02T09:00:00Z",
            "completed_at": "2025-01-03T09:00:00Z" if status == "completed" else None,
        },
    }


class FakeLms:
    """In-memory LMS API served through httpx.MockTransport.

    collections maps a path to its records. failures maps (path, page) to a
    list of status codes returned, in order, before the page succeeds.
    """

    def __init__(self):
        self.collections: Dict[str, List[Dict]] = {}
        self.failures: Dict[Tuple[str, int], List[int]] = {}
        self.requests: List[httpx.Request] = []

    def fail(self, path: str, page: int, *statuses: int) -> None:
        self.failures[(path, page)] = list(statuses)

    def requests_for(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        page = int(request.url.params.get("page", 1))
        limit = int(request.url.params.get("limit", 100))

        pending = self.failures.get((path, page))
        if pending:
            return httpx.Response(pending.pop(0), json={"error": "injected"})
        if path not in self.collections:
            return httpx.Response(404, json={"error": "not found"})

        items = self.collections[path]
        since = request.url.params.get("filter[updated_at][gteq]")
        if since:
            items = [i for i in items if i.get("attributes", {}).get("updated_at", "") >= since]
        chunk = items[(page - 1) * limit: page * limit]
        body: Dict[str, Any] = {"data": chunk, "links": {}}
        if page * limit < len(items):
            body["links"]["next"] = str(request.url.copy_set_param("page", page + 1))
        return httpx.Response(200, json=body)


@pytest.fixture(name="fake_lms")
def fake_lms_fixture() -> FakeLms:
    return FakeLms()


@pytest.fixture(name="sleeps")
def sleeps_fixture() -> List[float]:
    return []


@pytest.fixture(name="lms_client")
def lms_client_fixture(fake_lms, sleeps) -> LmsClient:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return LmsClient(
        api_key="test-key",
        base_url=BASE_URL,
        page_size=100,
        page_delay=0.125,
        rate_limit_backoff=10.0,
        max_pages=50,
        transport=httpx.MockTransport(fake_lms.handler),
        sleep=fake_sleep,
    )


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return Settings(
        lms_api_key="test-key",
        lms_base_url=BASE_URL,
        database_url="sqlite://",
        sync_batch_size=100,
        auto_match_on_group_sync=True,
    )


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="orchestrator")
def orchestrator_fixture(engine, settings, lms_client, clock) -> SyncOrchestrator:
    return SyncOrchestrator(
        engine,
        settings,
        lock=SyncLock(stale_after=30 * 60, clock=clock),
        client=lms_client,
    )
