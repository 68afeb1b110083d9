import os
import json
import tempfile

import pytest
import httpx
from cryptography.fernet import Fernet

# Settings are read at import time, so the environment is fixed before any lastmile import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["OTEL_ENABLED"] = "false"
os.environ["AUTO_ASSIGN_ENABLED"] = "false"
os.environ.setdefault("INTERNAL_ADMIN_KEY", "test-internal")
os.environ.setdefault("API_KEY_PEPPER", "test-pepper")
os.environ.setdefault("CREDENTIALS_ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))
os.environ.setdefault("PROOF_STORAGE_DIR", tempfile.mkdtemp(prefix="lastmile-proofs-"))

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

# Import Base + all models so metadata is complete
from lastmile.models import Base

from lastmile.main import app
from lastmile.core.db import get_db
from lastmile.api.v1.deps import get_callback_http, get_proof_store, get_test_callback_http
from lastmile.services.callback_http import CallbackHttpClient
from lastmile.services.storage import LocalObjectStore

from fixtures_seed import seed_assigned_trip, seed_fleet, seed_tenant  # noqa: F401


class TenantEndpoint:
    """
    Stand-in for a tenant's callback URL.
    Queued responses are used in order (an Exception is raised instead); afterwards every call gets 200.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: list = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            nxt = self.responses.pop(0)
            if isinstance(nxt, Exception):
                raise nxt
            return nxt
        return httpx.Response(200, json={"received": True})

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


class FakeEnqueue:
    def __init__(self, fail_for: set[str] | None = None):
        self.calls: list[tuple[str, list, str]] = []
        self.fail_for = fail_for or set()

    def __call__(self, task_name: str, args: list, queue: str) -> None:
        if args[0] in self.fail_for:
            raise RuntimeError("broker unavailable")
        self.calls.append((task_name, args, queue))


@pytest.fixture
async def async_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'lastmile.db'}")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
async def db_session(async_engine):
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False, class_=AsyncSession)
    async with session_factory() as session:
        yield session


@pytest.fixture
def tenant_endpoint() -> TenantEndpoint:
    return TenantEndpoint()


@pytest.fixture
async def callback_http(tenant_endpoint):
    async with CallbackHttpClient(transport=httpx.MockTransport(tenant_endpoint.handler)) as http:
        yield http


@pytest.fixture
def fake_enqueue() -> FakeEnqueue:
    return FakeEnqueue()


@pytest.fixture
def proof_dir(tmp_path):
    return tmp_path / "proofs"


@pytest.fixture
async def client(db_session: AsyncSession, callback_http, proof_dir):
    """
    HTTP client that uses the test DB session, the mocked tenant endpoint
    and a per-test proof store via dependency overrides.
    """
    async def _override_get_db():
        yield db_session

    async def _override_http():
        yield callback_http

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_callback_http] = _override_http
    app.dependency_overrides[get_test_callback_http] = _override_http
    app.dependency_overrides[get_proof_store] = lambda: LocalObjectStore(str(proof_dir))

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Internal-Admin-Key": os.environ["INTERNAL_ADMIN_KEY"]}
