"""
main.py
-------
Entry point del servicio de confianza del checkout.

Orden de registro de middlewares (importa el orden, se ejecutan al revés):
  1. CORS            → primero en registrarse, último en ejecutarse
  2. SecurityHeaders → headers de seguridad en todas las respuestas

Lifespan:
  - logging, Redis, tablas en desarrollo
  - EmailDispatcher y adaptador de pagos → app.state (se inyectan con Depends)
  - barrido de desafíos vencidos si VERIFICATION_SWEEP_INTERVAL_SECONDS > 0
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from checkout_trust.api.middlewares import SecurityHeadersMiddleware, setup_cors
from checkout_trust.api.routers import checkout, payments, risk_assessments, verification, webhooks
from checkout_trust.core.config import settings
from checkout_trust.core.exceptions import CheckoutTrustException
from checkout_trust.core.logging_config import setup_logging
from checkout_trust.infrastructure.cache.redis_client import redis_manager
from checkout_trust.infrastructure.database.session import AsyncSessionLocal, init_db, ping_db
from checkout_trust.infrastructure.messaging.email_service import EmailDispatcher
from checkout_trust.infrastructure.payments.factory import build_payment_gateway
from checkout_trust.services.expiry_sweeper import ExpirySweeper
from checkout_trust.services.verification_service import VerificationManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ── Startup ───────────────────────────────────────────────────────
    setup_logging(settings.LOG_LEVEL)
    await redis_manager.connect()
    if settings.DEBUG:
        await init_db()

    app.state.email_dispatcher = EmailDispatcher.from_settings(settings)
    app.state.payment_gateway  = build_payment_gateway(settings)

    sweeper = ExpirySweeper(
        manager          = VerificationManager(app.state.email_dispatcher, redis_manager.client),
        session_factory  = AsyncSessionLocal,
        interval_seconds = settings.VERIFICATION_SWEEP_INTERVAL_SECONDS,
    )
    await sweeper.start()
    logger.info(f"[Main] Servicio iniciado environment={settings.ENVIRONMENT}")

    yield

    # ── Shutdown ──────────────────────────────────────────────────────
    await sweeper.stop()
    await app.state.payment_gateway.aclose()
    await redis_manager.disconnect()


app = FastAPI(
    title    = "Checkout Trust API",
    version  = "1.0.0",
    docs_url = "/docs"  if settings.DEBUG else None,
    redoc_url= "/redoc" if settings.DEBUG else None,
    lifespan = lifespan,
)

# ── Middlewares (registrar en este orden exacto) ──────────────────────

# 1. CORS: debe ser el primero para que los preflight pasen
setup_cors(app, allowed_origins=settings.ALLOWED_ORIGINS)

# 2. Security headers: aplica a todas las respuestas
app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.ENVIRONMENT == "production")

# ── Routers ───────────────────────────────────────────────────────────
app.include_router(checkout.router)
app.include_router(verification.router)
app.include_router(payments.router)
app.include_router(risk_assessments.router)
app.include_router(webhooks.router)

# ── Handler global de excepciones ────────────────────────────────────
@app.exception_handler(CheckoutTrustException)
async def checkout_trust_exception_handler(
    request: Request, exc: CheckoutTrustException
) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code = exc.status_code,
        content     = exc.to_dict(),
        headers     = headers,
    )

# ── Health check ──────────────────────────────────────────────────────
@app.get("/health")
async def health_check():
    db_ok    = await ping_db()
    redis_ok = await redis_manager.ping()
    return {
        "status":      "ok" if db_ok else "degraded",
        "environment": settings.ENVIRONMENT,
        "database":    "ok" if db_ok else "unavailable",
        "redis":       "ok" if redis_ok else "degraded",
    }
