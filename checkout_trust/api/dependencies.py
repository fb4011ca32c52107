"""
dependencies.py
---------------
Dependencias reutilizables para inyectar en los routers de FastAPI.

get_db_session:
  Sesión de base de datos por request.

get_current_user / get_optional_user:
  Leen el JWT del header Authorization y retornan el usuario. El checkout
  acepta compras anónimas (get_optional_user); verificación y pagos
  requieren sesión (get_current_user):

      @router.post("/verify")
      async def verify(user: CurrentUser = Depends(get_current_user)):
          ...

get_email_dispatcher / get_payment_gateway:
  Adaptadores construidos en el lifespan y guardados en app.state.
  Los tests los reemplazan con app.dependency_overrides.

get_*_service:
  Arman los servicios de dominio con sus colaboradores inyectados.
"""

from typing import AsyncGenerator, Optional

import redis.asyncio as redis
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.core.config import settings
from checkout_trust.core.exceptions import UnauthorizedException
from checkout_trust.core.security import SecurityManager
from checkout_trust.domain.schemas import CurrentUser
from checkout_trust.infrastructure.cache.redis_client import redis_manager
from checkout_trust.infrastructure.database.session import get_db
from checkout_trust.infrastructure.messaging.email_service import EmailDispatcher
from checkout_trust.infrastructure.payments.gateway import PaymentGateway
from checkout_trust.services.checkout_service import CheckoutService
from checkout_trust.services.payment_orchestrator import PaymentOrchestrator
from checkout_trust.services.risk_engine import RiskScoringEngine
from checkout_trust.services.verification_service import VerificationManager
from checkout_trust.services.webhook_handler import WebhookReconciliationHandler

# ── Sesión de base de datos ───────────────────────────────────────────

async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_db():
        yield session


# ── Autenticación JWT ─────────────────────────────────────────────────

# auto_error=False: el checkout decide si el usuario es obligatorio
bearer_scheme = HTTPBearer(auto_error=False)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[CurrentUser]:
    """
    Sin header → None (compra anónima).
    Header presente pero inválido → 401: un token roto no se degrada a anónimo.
    """
    if credentials is None:
        return None
    payload = SecurityManager.decode_access_token(credentials.credentials)
    try:
        return CurrentUser(
            user_id = str(payload["sub"]),
            email   = payload.get("email"),
            name    = payload.get("name"),
            role    = payload.get("role") or "customer",
        )
    except ValidationError:
        raise UnauthorizedException("El token contiene datos de usuario inválidos.")


async def get_current_user(
    user: Optional[CurrentUser] = Depends(get_optional_user),
) -> CurrentUser:
    if user is None:
        raise UnauthorizedException()
    return user


# ── Adaptadores (app.state) ───────────────────────────────────────────

def get_email_dispatcher(request: Request) -> EmailDispatcher:
    return request.app.state.email_dispatcher


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_redis() -> Optional[redis.Redis]:
    return redis_manager.client


# ── Servicios ─────────────────────────────────────────────────────────

def get_risk_engine() -> RiskScoringEngine:
    return RiskScoringEngine()


def get_verification_manager(
    dispatcher:   EmailDispatcher = Depends(get_email_dispatcher),
    redis_client: Optional[redis.Redis] = Depends(get_redis),
) -> VerificationManager:
    return VerificationManager(dispatcher, redis_client)


def get_payment_orchestrator(
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(gateway)


def get_checkout_service(
    engine:       RiskScoringEngine   = Depends(get_risk_engine),
    verification: VerificationManager = Depends(get_verification_manager),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> CheckoutService:
    return CheckoutService(engine, verification, orchestrator)


def get_webhook_handler() -> WebhookReconciliationHandler:
    return WebhookReconciliationHandler(
        secret    = settings.PAYMENT_WEBHOOK_SECRET,
        tolerance = settings.PAYMENT_WEBHOOK_TOLERANCE_SECONDS,
    )
