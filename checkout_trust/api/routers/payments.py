"""
payments.py — Router de pagos
-----------------------------
Expone:
  POST /v1/payments/{intent_id}/confirm      → confirma el intent en el proveedor
  GET  /v1/payments/status?intent_id=...     → snapshot por intent
  GET  /v1/payments/status?order_id=...      → snapshot de la última transacción de la orden

El 404 de /status lleva "retryable": true cuando la transacción todavía
no se registró (el cliente puede seguir consultando) y false cuando la
orden no existe.

Solo se ven los pagos del usuario autenticado: uno ajeno responde igual
que uno inexistente.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.api.dependencies import (
    get_current_user,
    get_db_session,
    get_payment_orchestrator,
)
from checkout_trust.domain.schemas import (
    ConfirmPaymentRequest,
    CurrentUser,
    TransactionSnapshot,
)
from checkout_trust.services.payment_orchestrator import PaymentOrchestrator

router = APIRouter(prefix="/v1/payments", tags=["Pagos"])


@router.get("/status", response_model=TransactionSnapshot, summary="Estado de un pago")
async def payment_status(
    intent_id:    Optional[str]       = Query(None, max_length=255),
    order_id:     Optional[int]       = Query(None, ge=1),
    db:           AsyncSession        = Depends(get_db_session),
    user:         CurrentUser         = Depends(get_current_user),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await orchestrator.get_status(db, intent_id=intent_id, order_id=order_id, user_id=user.user_id)


@router.post("/{intent_id}/confirm", response_model=TransactionSnapshot, summary="Confirmar un pago")
async def confirm_payment(
    intent_id:    str,
    body:         Optional[ConfirmPaymentRequest] = None,
    db:           AsyncSession        = Depends(get_db_session),
    user:         CurrentUser         = Depends(get_current_user),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    payment_method_id = body.payment_method_id if body else None
    return await orchestrator.confirm(db, intent_id, payment_method_id, user_id=user.user_id)
