"""
assessment_repository.py
------------------------
Repositorio de auditoría de evaluaciones de riesgo.

Responsabilidades:
  - Insertar un registro en `risk_assessments` por cada evaluación del
    motor de riesgo, con el snapshot del contexto y los factores.
  - Vincular la evaluación con cada tienda del carrito
    (`risk_assessment_stores`), sin duplicados y sin la tienda "unknown".
  - Vincular la evaluación con las órdenes que generó
    (`risk_assessment_orders`): una compra multi-tienda evaluada una vez
    termina en varias órdenes.

Principios de diseño:
  - save_assessment NUNCA lanza excepciones hacia afuera: si falla
    solo loguea el error y retorna None. La auditoría es best-effort,
    la decisión no: el motor devuelve su resultado igual.
  - link_orders sí lanza PersistenceException: es un pedido explícito
    del cliente y tiene que saber si quedó guardado.

Uso en el motor de riesgo:
    repo = AssessmentRepository(db)
    assessment_id = await repo.save_assessment(context, result, user)
"""

from decimal import Decimal
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.core.exceptions import PersistenceException
from checkout_trust.domain.models import (
    RiskAssessment,
    RiskAssessmentOrderLink,
    RiskAssessmentStoreLink,
)
from checkout_trust.domain.schemas import (
    UNKNOWN_STORE,
    CurrentUser,
    RiskResult,
    TransactionContext,
)

logger = logging.getLogger(__name__)


class AssessmentRepository:
    """
    Encapsula el INSERT en `risk_assessments`.

    Se instancia por request con la sesión de DB inyectada desde el router.
    No es un singleton — la sesión es por-request.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def save_assessment(
        self,
        context: TransactionContext,
        result:  RiskResult,
        user:    Optional[CurrentUser] = None,
    ) -> Optional[uuid.UUID]:
        """
        Persiste la evaluación y sus vínculos a tiendas.

        Retorna el id de la evaluación, o None si la escritura falló.
        """
        user_id = user.user_id if user else None
        try:
            assessment = RiskAssessment(
                id                    = uuid.uuid4(),
                user_id               = user_id,
                order_id              = context.order_id,
                amount                = context.amount,
                currency              = context.currency,
                item_count            = context.item_count,
                unique_item_count     = context.unique_item_count,
                max_single_quantity   = context.max_single_quantity,
                store_count           = context.store_count,
                is_authenticated      = user is not None,
                is_new_payment_method = context.is_new_payment_method,
                user_agent            = context.user_agent,
                ip_address            = context.ip_address,
                context_snapshot      = context.payment_snapshot(),
                score                 = result.score,
                decision              = result.decision.value,
                confidence            = Decimal(str(result.confidence)),
                factors               = [f.model_dump() for f in result.factors],
            )
            assessment.store_links = [
                RiskAssessmentStoreLink(store_id=store_id)
                for store_id in context.store_ids
                if store_id != UNKNOWN_STORE
            ]
            if context.order_id is not None:
                assessment.order_links = [RiskAssessmentOrderLink(order_id=context.order_id)]

            self.db.add(assessment)
            await self.db.commit()

            logger.info(
                f"[AssessmentRepository] INSERT OK — "
                f"assessment_id={assessment.id}  user={user_id}  "
                f"decision={result.decision.value}  score={result.score}  "
                f"stores={len(assessment.store_links)}"
            )
            return assessment.id

        except Exception as exc:
            # Nunca propagar: un fallo de DB no debe bloquear la decisión.
            logger.error(
                f"[AssessmentRepository] Error guardando evaluación "
                f"user={user_id}: {exc}"
            )
            try:
                await self.db.rollback()
            except Exception as rollback_exc:
                logger.error(f"[AssessmentRepository] Rollback falló: {rollback_exc}")
            return None

    async def get_assessment(self, assessment_id: uuid.UUID) -> Optional[RiskAssessment]:
        return await self.db.get(RiskAssessment, assessment_id)

    async def get_linked_order_ids(self, assessment_id: uuid.UUID) -> list[int]:
        result = await self.db.execute(
            select(RiskAssessmentOrderLink.order_id)
            .where(RiskAssessmentOrderLink.assessment_id == assessment_id)
            .order_by(RiskAssessmentOrderLink.order_id)
        )
        return list(result.scalars().all())

    async def link_orders(self, assessment_id: uuid.UUID, order_ids: list[int]) -> list[int]:
        """
        Inserta los vínculos que faltan y devuelve los ids recién vinculados.
        Repetir la llamada con las mismas órdenes no duplica filas.
        """
        existing = set(await self.get_linked_order_ids(assessment_id))
        new_ids  = [order_id for order_id in order_ids if order_id not in existing]
        if not new_ids:
            return []

        self.db.add_all(
            RiskAssessmentOrderLink(assessment_id=assessment_id, order_id=order_id)
            for order_id in new_ids
        )
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[AssessmentRepository] Error vinculando órdenes a {assessment_id}: {e}")
            raise PersistenceException()

        logger.info(f"[AssessmentRepository] assessment_id={assessment_id} vinculada a órdenes {new_ids}")
        return new_ids
