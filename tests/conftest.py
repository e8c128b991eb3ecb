"""
Pytest configuration and fixtures.

The remote server is replaced by `FakeServer`, a small aiohttp application
with in-memory collections, served on a real local port.
"""

import asyncio
import base64
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from PySide6.QtCore import QCoreApplication

# Add project root
sys.path.insert(0, str(Path(__file__).parent.parent))

from tikker.domain.models import AuthConfig, AuthType
from tikker.infra.api_client import KimaiApiClient
from tikker.infra.db import DatabaseEngine, init_db
from tikker.infra.repository import HistoryRepository, KeyValueRepository, SessionRepository, TimerStateRepository
from tikker.services.cache_store import EntityCache
from tikker.services.cache_sync import CacheSynchronizer
from tikker.services.session_service import SessionManager
from tikker.services.timer_service import TimerService

TOKEN = "secret-token"
USERNAME = "susan"
PASSWORD = "hunter2"

# path segment -> paginated list?
PAGINATED = {"timesheets": True, "tasks": True, "customers": False, "projects": False, "activities": False}


class FakeClock:
    """Controllable replacement for datetime.now"""

    def __init__(self, start: Optional[datetime.datetime] = None):
        self.now = start or datetime.datetime(2026, 3, 2, 9, 0, 0)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


class FakeServer:
    """
    In-memory stand-in for the remote API.

    `failures` maps (method, path) to a status code, or to (status, raw body)
    for responses whose body is not JSON. `bodies` maps (method, path) to a
    JSON body returned with 200 instead of the real answer. `delay` slows
    every request down; `trace` records when each request arrives and leaves.
    With `include_globals` an activity list filtered by project also returns
    the global activities.
    """

    def __init__(self):
        self.data: Dict[str, List[Dict[str, Any]]] = {
            "customers": [
                {"id": 5, "name": "Acme", "visible": True},
                {"id": 6, "name": "Globex", "visible": True},
            ],
            "projects": [
                {"id": 12, "name": "Website", "customer": 5, "visible": True},
                {"id": 13, "name": "Support", "customer": 5, "visible": True},
                {"id": 20, "name": "Migration", "customer": 6, "visible": True},
            ],
            "activities": [
                {"id": 30, "name": "Development", "project": 12, "visible": True},
                {"id": 31, "name": "Hotline", "project": 13, "visible": True},
                {"id": 32, "name": "Meeting", "project": None, "visible": True},
                {"id": 40, "name": "Planning", "project": 20, "visible": True},
            ],
            "timesheets": [],
            "tasks": [
                {"id": 70, "title": "Fix login", "status": "open", "priority": "high",
                 "project": {"id": 12, "name": "Website", "customer": 5},
                 "activity": {"id": 30, "name": "Development"}, "actualDuration": 600},
                {"id": 71, "title": "Write docs", "status": "pending", "priority": "low",
                 "customer": 5, "project": 13, "activity": 31, "actualDuration": None},
                {"id": 72, "title": "Old ticket", "status": "closed", "priority": "medium",
                 "customer": 6, "project": 20, "activity": 40, "actualDuration": 0},
            ],
        }
        self.requests: List[Tuple[str, str, Any]] = []
        self.failures: Dict[Tuple[str, str], Union[int, Tuple[int, str]]] = {}
        self.bodies: Dict[Tuple[str, str], Any] = {}
        self.trace: List[Tuple[str, str, str]] = []
        self.include_globals = False
        self.delay: float = 0.0
        self.next_id = 100
        self.server: Optional[TestServer] = None

    @property
    def url(self) -> str:
        return str(self.server.make_url("")).rstrip("/")

    def auth(self, **overrides) -> AuthConfig:
        values = {"type": AuthType.API_TOKEN, "base_url": self.url, "api_token": TOKEN}
        values.update(overrides)
        return AuthConfig(**values)

    def calls(self, method: str, path: str) -> List[Any]:
        return [body for m, p, body in self.requests if m == method and p == path]

    # ------------------------------------------------------------------
    # aiohttp application
    # ------------------------------------------------------------------

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._middleware])
        app.router.add_get("/api/version", self._version)
        app.router.add_get("/api/config", self._config)
        app.router.add_get("/api/user/me", self._me)
        app.router.add_get("/api/{collection}", self._list)
        app.router.add_post("/api/{collection}", self._create)
        app.router.add_get("/api/{collection}/{id}", self._get)
        app.router.add_patch("/api/{collection}/{id}", self._update)
        app.router.add_delete("/api/{collection}/{id}", self._delete)
        return app

    @web.middleware
    async def _middleware(self, request: web.Request, handler):
        body = await request.json() if request.body_exists else None
        self.requests.append((request.method, request.path, body))
        self.trace.append(("in", request.method, request.path))
        try:
            return await self._respond(request, handler)
        finally:
            self.trace.append(("out", request.method, request.path))

    async def _respond(self, request: web.Request, handler):
        if self.delay:
            await asyncio.sleep(self.delay)

        key = (request.method, request.path)
        if key in self.bodies:
            return web.json_response(self.bodies[key])

        failure = self.failures.get(key)
        if failure is not None:
            if isinstance(failure, tuple):
                status, raw = failure
                return web.Response(status=status, text=raw, content_type="text/html")
            return web.json_response({"code": failure, "message": f"Forced failure {failure}"}, status=failure)

        if not self._authorized(request):
            return web.json_response({"code": 401, "message": "Invalid credentials"}, status=401)
        return await handler(request)

    @staticmethod
    def _authorized(request: web.Request) -> bool:
        header = request.headers.get("Authorization", "")
        if header == f"Bearer {TOKEN}":
            return True
        expected = base64.b64encode(f"{USERNAME}:{PASSWORD}".encode()).decode()
        return header == f"Basic {expected}"

    async def _version(self, request):
        return web.json_response({"version": "2.20.0", "versionId": 22000, "semanticVersion": "2.20.0"})

    async def _config(self, request):
        return web.json_response({"timesheet": {"allowOverlapping": False}})

    async def _me(self, request):
        return web.json_response({"id": 1, "username": USERNAME, "email": "susan@example.com", "roles": ["ROLE_USER"]})

    def _rows(self, request) -> List[Dict[str, Any]]:
        collection = request.match_info["collection"]
        if collection not in self.data:
            raise web.HTTPNotFound()
        return self.data[collection]

    def _find(self, request) -> Dict[str, Any]:
        entity_id = int(request.match_info["id"])
        for row in self._rows(request):
            if row["id"] == entity_id:
                return row
        raise web.HTTPNotFound(text='{"code": 404, "message": "Not found"}', content_type="application/json")

    async def _list(self, request):
        collection = request.match_info["collection"]
        rows = self._rows(request)
        for key in ("customer", "project"):
            if key in request.query:
                parent = int(request.query[key])
                rows = [r for r in rows if r.get(key) == parent
                        or (key == "project" and self.include_globals and r.get(key) is None)]
        if PAGINATED[collection]:
            return web.json_response({"data": rows, "total": len(rows), "page": 1, "size": 50, "pages": 1})
        return web.json_response(rows)

    async def _get(self, request):
        return web.json_response(self._find(request))

    async def _create(self, request):
        body = await request.json()
        self.next_id += 1
        row = dict(body, id=self.next_id)
        if request.match_info["collection"] == "timesheets":
            row.setdefault("end", None)
            row.setdefault("duration", 0)
            row.setdefault("exported", False)
            row["user"] = 1
        self._rows(request).append(row)
        return web.json_response(row)

    async def _update(self, request):
        row = self._find(request)
        row.update(await request.json())
        return web.json_response(row)

    async def _delete(self, request):
        row = self._find(request)
        self._rows(request).remove(row)
        return web.Response(status=204)


@pytest.fixture(scope="session", autouse=True)
def qt_app():
    """Qt application object required by QObject signals and QTimer"""
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def fake_server():
    fake = FakeServer()
    fake.server = TestServer(fake.build_app())
    await fake.server.start_server()
    yield fake
    await fake.server.close()


@pytest_asyncio.fixture
async def client(fake_server):
    api = KimaiApiClient(fake_server.auth(), timeout=2)
    yield api
    await api.close()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so every session sees the same data"""
    engine: DatabaseEngine = await init_db(f"sqlite+aiosqlite:///{tmp_path / 'tikker-test.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
def store(db_engine):
    return KeyValueRepository(db_engine)


@pytest.fixture
def cache():
    return EntityCache()


@pytest.fixture
def synchronizer(cache, client):
    return CacheSynchronizer(cache, client)


@pytest.fixture
def timer(clock):
    return TimerService(clock=clock, show_notifications=False)


@pytest.fixture
def session_manager(timer, synchronizer, client, store):
    return SessionManager(
        timer,
        synchronizer,
        client,
        session_repo=SessionRepository(store),
        timer_repo=TimerStateRepository(store),
        history_repo=HistoryRepository(store),
    )


@pytest_asyncio.fixture
async def logged_in(session_manager, fake_server):
    """Session manager connected to the fake server with the catalog loaded"""
    await session_manager.login(fake_server.auth())
    return session_manager
