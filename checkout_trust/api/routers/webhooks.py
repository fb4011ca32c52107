"""
webhooks.py — Router de webhooks del proveedor de pagos
-------------------------------------------------------
Expone:
  POST /v1/webhooks/payments → reconcilia un evento firmado

Responde 400 si la firma o el JSON no son válidos (el proveedor lo
reintenta) y 200 con el resultado por sub-paso en cualquier otro caso.
El body se lee crudo: la firma se calcula sobre los bytes exactos.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.api.dependencies import get_db_session, get_webhook_handler
from checkout_trust.services.webhook_handler import WebhookReconciliationHandler

router = APIRouter(prefix="/v1/webhooks", tags=["Webhooks"])


@router.post("/payments", summary="Webhook del proveedor de pagos")
async def payment_webhook(
    request:          Request,
    stripe_signature: Optional[str]                = Header(None, alias="Stripe-Signature"),
    db:               AsyncSession                 = Depends(get_db_session),
    handler:          WebhookReconciliationHandler = Depends(get_webhook_handler),
) -> dict:
    payload = await request.body()
    outcome = await handler.handle(db, payload, stripe_signature)
    return outcome.to_dict()
