"""
risk_assessments.py — Router de evaluaciones de riesgo
------------------------------------------------------
Expone:
  POST /v1/risk-assessments/{assessment_id}/orders → vincula la evaluación
                                                     con las órdenes creadas

Una compra multi-tienda se evalúa una sola vez y termina en una orden por
tienda; el cliente informa esas órdenes con el assessment_id que recibió
en la respuesta del checkout. Repetir el pedido no duplica vínculos.
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.api.dependencies import (
    get_current_user,
    get_db_session,
    get_risk_engine,
)
from checkout_trust.domain.schemas import (
    CurrentUser,
    LinkOrdersRequest,
    LinkOrdersResponse,
)
from checkout_trust.services.risk_engine import RiskScoringEngine

router = APIRouter(prefix="/v1/risk-assessments", tags=["Evaluaciones de riesgo"])


@router.post(
    "/{assessment_id}/orders",
    response_model = LinkOrdersResponse,
    summary        = "Vincular órdenes a una evaluación",
)
async def link_orders(
    assessment_id: uuid.UUID,
    body:          LinkOrdersRequest,
    db:            AsyncSession      = Depends(get_db_session),
    user:          CurrentUser       = Depends(get_current_user),
    engine:        RiskScoringEngine = Depends(get_risk_engine),
):
    linked, already = await engine.link_orders(db, assessment_id, body.order_ids, user.user_id)
    return LinkOrdersResponse(assessment_id=assessment_id, linked=linked, already_linked=already)
