"""
checkout.py — Router del checkout
---------------------------------
Expone:
  POST /v1/checkout/submit → evalúa el riesgo y responde según la decisión

    200 proceed                → client_secret del payment intent
    202 verification_required  → token del desafío OTP enviado por email
    403 blocked                → score, factores y contacto de soporte
    503                        → no se pudo enviar el email del código

Acepta compras anónimas; si viene un JWT inválido responde 401.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.api.dependencies import (
    get_checkout_service,
    get_db_session,
    get_optional_user,
)
from checkout_trust.domain.schemas import (
    CheckoutBlockedResponse,
    CheckoutProceedResponse,
    CheckoutVerificationResponse,
    CurrentUser,
    TransactionContext,
)
from checkout_trust.services.checkout_service import CheckoutService

router = APIRouter(prefix="/v1/checkout", tags=["Checkout"])

_STATUS_BY_OUTCOME = {
    "proceed":               status.HTTP_200_OK,
    "verification_required": status.HTTP_202_ACCEPTED,
    "blocked":               status.HTTP_403_FORBIDDEN,
}


def _client_ip(request: Request) -> Optional[str]:
    # X-Forwarded-For viene cuando hay un proxy/load balancer delante
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


@router.post(
    "/submit",
    response_model=CheckoutProceedResponse,
    responses={
        202: {"model": CheckoutVerificationResponse},
        403: {"model": CheckoutBlockedResponse},
    },
    summary="Enviar checkout para evaluación de riesgo",
)
async def submit_checkout(
    context:  TransactionContext,
    request:  Request,
    db:       AsyncSession              = Depends(get_db_session),
    user:     Optional[CurrentUser]     = Depends(get_optional_user),
    checkout: CheckoutService           = Depends(get_checkout_service),
):
    # Completar con lo que el transporte sabe y el body no trae
    enrichment = {}
    if context.ip_address is None:
        enrichment["ip_address"] = _client_ip(request)
    if context.user_agent is None:
        enrichment["user_agent"] = request.headers.get("User-Agent")
    if enrichment:
        context = context.model_copy(update=enrichment)

    result = await checkout.submit(db, context, user)
    return JSONResponse(
        status_code = _STATUS_BY_OUTCOME[result.outcome],
        content     = result.model_dump(mode="json"),
    )
