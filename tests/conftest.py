"""
NetBilling - Test Configuration

Pytest fixtures: base SQLite temporal por prueba, doble del punto de
enforcement (httpx.MockTransport) y notificador que sólo registra.
"""
import json
import os
import tempfile
from datetime import datetime, timezone
from typing import AsyncGenerator, List

# Antes de importar netbilling: la app no debe apuntar a PostgreSQL ni arrancar el scheduler
_TMP_DIR = tempfile.mkdtemp(prefix="netbilling-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'app.db')}"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["WEBHOOK_SECRET"] = ""

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from netbilling.config import Settings
from netbilling.database import Base, get_db
from netbilling.middleware.auth import create_access_token, hash_password
from netbilling.models import (
    Client, ClientStatus, ServicePackage, SubscriptionType, Tenant, User, UserRole,
)
from netbilling.services.billing_service import BillingService
from netbilling.services.locks import ClientLockRegistry
from netbilling.services.network_sync import NetworkSyncDispatcher
from netbilling.services.notifications import NotificationEmitter

ENFORCEMENT_URL = "http://enforcement.test/api/radius/sync"

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class EnforcementDouble:
    """Registra cada comando recibido; se puede hacer fallar o expirar."""

    def __init__(self):
        self.requests: List[dict] = []
        self.headers: List[httpx.Headers] = []
        self.status_code = 200
        self.timeout = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        self.headers.append(request.headers)
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(self.status_code, json={"success": self.status_code < 400})

    def actions(self) -> List[str]:
        return [r["action"] for r in self.requests]


class RecordingNotifier(NotificationEmitter):
    def __init__(self):
        super().__init__(url=None)
        self.events = []

    def emit(self, client_id, event, data=None):
        self.events.append((client_id, event, data or {}))

    def event_types(self) -> List[str]:
        return [e[1].value for e in self.events]


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def settings() -> Settings:
    return Settings(
        SCHEDULER_ENABLED=False,
        SCHEDULER_MAX_WORKERS=1,
        CLIENT_LOCK_TIMEOUT_SECONDS=1,
        SYNC_MAX_RETRIES=3,
        SYNC_BACKOFF_BASE_SECONDS=60,
        SYNC_BACKOFF_MAX_SECONDS=3600,
        DISCONNECT_GRACE_DAYS=30,
        WEBHOOK_SECRET="",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Base nueva por prueba."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def enforcement() -> EnforcementDouble:
    return EnforcementDouble()


@pytest_asyncio.fixture
async def dispatcher(enforcement, settings) -> AsyncGenerator[NetworkSyncDispatcher, None]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(enforcement.handler))
    d = NetworkSyncDispatcher(
        url=ENFORCEMENT_URL,
        api_token="secret-token",
        timeout=2.0,
        http_client=http_client,
        backoff_base=settings.SYNC_BACKOFF_BASE_SECONDS,
        backoff_max=settings.SYNC_BACKOFF_MAX_SECONDS,
    )
    yield d
    await d.aclose()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def locks(settings) -> ClientLockRegistry:
    return ClientLockRegistry(timeout=settings.CLIENT_LOCK_TIMEOUT_SECONDS)


@pytest_asyncio.fixture
async def service(session_factory, dispatcher, notifier, locks, settings) -> AsyncGenerator[BillingService, None]:
    async with session_factory() as session:
        yield BillingService(session, dispatcher, notifier, locks, settings)


# ===========================================
# DATA FIXTURES
# ===========================================

@pytest_asyncio.fixture
async def tenant(db: AsyncSession) -> Tenant:
    t = Tenant(name="WispNet", slug="wispnet", email="ops@wispnet.test")
    db.add(t)
    await db.commit()
    await db.refresh(t)
    return t


@pytest_asyncio.fixture
async def package(db: AsyncSession, tenant: Tenant) -> ServicePackage:
    p = ServicePackage(
        tenant_id=tenant.id, name="Hogar 10M", download_speed=10, upload_speed=2,
        groupname="hogar-10m", monthly_rate_cents=50000,
    )
    db.add(p)
    await db.commit()
    await db.refresh(p)
    return p


@pytest.fixture
def make_client(db: AsyncSession, tenant: Tenant):
    """Crea un cliente ya persistido; montos en centavos."""
    counter = {"n": 0}

    async def _make(
        status: ClientStatus = ClientStatus.ACTIVE,
        balance_cents: int = 0,
        rate_cents: int = 50000,
        end: datetime | None = None,
        subscription_type: SubscriptionType = SubscriptionType.MONTHLY,
        package: ServicePackage | None = None,
        **extra,
    ) -> Client:
        counter["n"] += 1
        extra.setdefault("radius_username", f"user{counter['n']}")
        extra.setdefault("radius_password", "pw")
        client = Client(
            tenant_id=tenant.id,
            name=f"Cliente {counter['n']}",
            status=status,
            wallet_balance_cents=balance_cents,
            monthly_rate_cents=rate_cents,
            subscription_type=subscription_type,
            subscription_end_date=end,
            service_package_id=package.id if package else None,
            **extra,
        )
        db.add(client)
        await db.commit()
        await db.refresh(client)
        return client

    return _make


@pytest.fixture
def reload(db: AsyncSession):
    """Relee de la BD ignorando el identity map de la sesión de pruebas."""
    async def _reload(model, pk):
        return await db.get(model, pk, populate_existing=True)
    return _reload


# ===========================================
# API FIXTURES
# ===========================================

@pytest_asyncio.fixture
async def admin_user(db: AsyncSession, tenant: Tenant) -> User:
    user = User(
        tenant_id=tenant.id,
        email="admin@wispnet.test",
        username="admin",
        hashed_password=hash_password("S3cret!pass"),
        full_name="Admin WispNet",
        role=UserRole.ADMIN,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest.fixture
def auth_headers(admin_user: User) -> dict:
    token = create_access_token(admin_user.id, admin_user.tenant_id, admin_user.role.value)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def api_client(session_factory, dispatcher, notifier, locks, settings) -> AsyncGenerator[AsyncClient, None]:
    """Cliente HTTP contra la app, con dependencias apuntando a la base de prueba."""
    from netbilling.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.notifier = notifier
    app.state.locks = locks

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
