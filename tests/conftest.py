"""
Fixtures compartidas.

Las variables de entorno se fijan ANTES de importar checkout_trust: el
módulo de configuración instancia Settings() al importarse.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ["DATABASE_URL"]                        = "sqlite+aiosqlite:///:memory:"
os.environ["PAYMENT_GATEWAY"]                     = "fake"
os.environ["PAYMENT_WEBHOOK_SECRET"]              = "whsec_test"
os.environ["DEBUG"]                               = "false"
os.environ["VERIFICATION_SWEEP_INTERVAL_SECONDS"] = "0"

import hashlib
import hmac
import time
from datetime import timedelta
from decimal import Decimal

import fakeredis.aioredis
import httpx
import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from checkout_trust.core.security import SecurityManager
from checkout_trust.domain.models import VerificationChallenge, utcnow
from checkout_trust.domain.schemas import CartItem, CurrentUser, TransactionContext
from checkout_trust.infrastructure.database.session import init_db
from checkout_trust.infrastructure.messaging.email_service import EmailDispatcher
from checkout_trust.infrastructure.payments.fake_gateway import FakeGateway
from checkout_trust.services.checkout_service import CheckoutService
from checkout_trust.services.payment_orchestrator import PaymentOrchestrator
from checkout_trust.services.risk_engine import RiskScoringEngine
from checkout_trust.services.verification_service import VerificationManager


class RecordingDispatcher(EmailDispatcher):
    """Arma el email completo pero no abre conexión SMTP."""

    def __init__(self) -> None:
        super().__init__(hostname="localhost", port=1025, sender="tests@marketplace.local")
        self.sent: list[dict] = []
        self.fail = False

    async def send_otp(self, to, code, **kwargs):
        self.sent.append({"to": to, "code": code, **kwargs})
        return await super().send_otp(to, code, **kwargs)

    async def _send(self, to, subject, html, text):
        return not self.fail

    @property
    def last_code(self) -> str:
        return self.sent[-1]["code"]


# ── Base de datos ─────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass    = StaticPool,
        connect_args = {"check_same_thread": False},
    )
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(
        bind             = db_engine,
        class_           = AsyncSession,
        expire_on_commit = False,
        autoflush        = False,
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ── Colaboradores externos ────────────────────────────────────────────

@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def gateway():
    return FakeGateway()


# ── Servicios ─────────────────────────────────────────────────────────

@pytest.fixture
def risk_engine():
    return RiskScoringEngine(warn_threshold=40, deny_threshold=75)


@pytest.fixture
def manager(dispatcher, redis_client):
    return VerificationManager(dispatcher, redis_client)


@pytest.fixture
def orchestrator(gateway):
    return PaymentOrchestrator(gateway)


@pytest.fixture
def checkout_service(risk_engine, manager, orchestrator):
    return CheckoutService(risk_engine, manager, orchestrator, support_contact="help@marketplace.test")


# ── Datos ─────────────────────────────────────────────────────────────

@pytest.fixture
def user():
    return CurrentUser(user_id="user-1", email="buyer@example.com", name="Ana")


@pytest.fixture
def make_context():
    def _make(amount="50.00", quantity=1, stores=("store-1",), **overrides):
        items = [
            CartItem(product_id=f"prod-{i}", store_id=store, quantity=quantity if i == 0 else 1)
            for i, store in enumerate(stores)
        ]
        return TransactionContext(amount=Decimal(amount), currency="aud", items=items, **overrides)
    return _make


@pytest.fixture
def expire_challenge(db):
    async def _expire(token: str) -> None:
        await db.execute(
            update(VerificationChallenge)
            .where(VerificationChallenge.token == token)
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )
        await db.commit()
    return _expire


# ── API ───────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(session_factory, dispatcher, gateway, redis_client):
    from checkout_trust.api import dependencies
    from checkout_trust.main import app

    async def _db_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[dependencies.get_db_session]       = _db_session
    app.dependency_overrides[dependencies.get_email_dispatcher] = lambda: dispatcher
    app.dependency_overrides[dependencies.get_payment_gateway]  = lambda: gateway
    app.dependency_overrides[dependencies.get_redis]            = lambda: redis_client

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport = transport,
        base_url  = "http://testserver",
        headers   = {"User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"},
    ) as http:
        yield http

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    token = SecurityManager.create_access_token(
        {"sub": "user-1", "email": "buyer@example.com", "name": "Ana"}
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def stripe_signature():
    """Arma un header Stripe-Signature como lo firma el proveedor."""
    def _sign(payload: bytes, secret: str = "whsec_test", timestamp: int | None = None) -> str:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed    = f"{timestamp}.".encode() + payload
        digest    = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"
    return _sign
