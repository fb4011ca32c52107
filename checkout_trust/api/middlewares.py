"""
middlewares.py
--------------
Middlewares del servicio de checkout.

Middlewares incluidos:
  1. SecurityHeadersMiddleware → agrega headers de seguridad HTTP
  2. setup_cors()              → configura CORS para el frontend del marketplace

Orden de registro en main.py (importa el orden):
  1. CORS            → primero, para que preflight requests pasen
  2. SecurityHeaders → segundo, aplica a todas las respuestas
"""

import logging
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# 1. Security Headers Middleware
# ─────────────────────────────────────────────────────────────────────

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Agrega headers de seguridad HTTP a todas las respuestas.

    Headers incluidos:
      - X-Content-Type-Options    → evita MIME sniffing
      - X-Frame-Options           → evita clickjacking
      - Strict-Transport-Security → fuerza HTTPS (solo en producción)
      - Referrer-Policy           → controla información del referrer
      - Cache-Control             → evita cacheo de respuestas con datos de pago
    """

    def __init__(self, app, enable_hsts: bool = False):
        super().__init__(app)
        self.enable_hsts = enable_hsts

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"]        = "DENY"
        response.headers["Referrer-Policy"]        = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"]          = "no-store, no-cache, must-revalidate, private"

        # En desarrollo local no hay HTTPS
        if self.enable_hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


# ─────────────────────────────────────────────────────────────────────
# 2. CORS
# ─────────────────────────────────────────────────────────────────────

def setup_cors(app: FastAPI, allowed_origins: list[str]) -> None:
    """
    Llamar desde main.py antes de registrar otros middlewares:
        setup_cors(app, settings.ALLOWED_ORIGINS)

    Stripe-Signature no se incluye: los webhooks no vienen de un browser.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins     = allowed_origins,
        allow_credentials = True,
        allow_methods     = ["GET", "POST", "OPTIONS"],
        allow_headers     = [
            "Content-Type",
            "Authorization",
            "X-Request-ID",
        ],
        # Cuánto tiempo el browser puede cachear el preflight (segundos)
        max_age           = 600,
    )
    logger.info(f"[CORS] Orígenes permitidos: {allowed_origins}")
