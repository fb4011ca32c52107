"""
payment_orchestrator.py
-----------------------
Orquestador de payment intents.

Flujo:
  1. create_intent → crea el intent en el proveedor y persiste la
     PaymentTransaction en "pending" ANTES de cualquier confirmación,
     para que el webhook siempre encuentre la fila por id externo
  2. confirm       → confirma en el proveedor y aplica la transición
     (succeeded → completed + orden confirmada, processing → processing,
     cualquier otro estado → failed + orden fallida)
  3. get_status    → snapshot por intent o por orden; 404 "todavía no"
     (retryable) vs 404 "nunca" (la orden no existe)

Con user_id, confirm y get_status solo ven pagos de ese usuario: un pago
ajeno (o anónimo) responde el mismo 404 que uno inexistente, sin revelar
que existe.

Las transiciones pasan por PaymentRepository, la misma máquina de
estados que usa el webhook: gane quien gane la carrera, los estados
terminales absorben el evento repetido.
"""

from dataclasses import dataclass
import logging
from typing import Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.core.exceptions import (
    CheckoutValidationException,
    TransactionNotFoundException,
)
from checkout_trust.domain.models import PaymentTransaction
from checkout_trust.domain.schemas import (
    CurrentUser,
    OrderPaymentStatus,
    OrderStatus,
    TransactionContext,
    TransactionSnapshot,
    TransactionStatus,
)
from checkout_trust.infrastructure.database.payment_repository import PaymentRepository
from checkout_trust.infrastructure.payments.gateway import (
    INTENT_PROCESSING,
    INTENT_SUCCEEDED,
    PaymentGateway,
    to_minor_units,
)

logger = logging.getLogger(__name__)

# Estado del intent → (transacción, orden, estado de pago de la orden)
CONFIRM_OUTCOMES = {
    INTENT_SUCCEEDED:  (TransactionStatus.COMPLETED,  OrderStatus.CONFIRMED, OrderPaymentStatus.PAID),
    INTENT_PROCESSING: (TransactionStatus.PROCESSING, OrderStatus.PENDING,   OrderPaymentStatus.PROCESSING),
}
CONFIRM_FAILED = (TransactionStatus.FAILED, OrderStatus.FAILED, OrderPaymentStatus.FAILED)


@dataclass
class IntentTicket:
    intent_id:      str
    client_secret:  str
    transaction_id: int


class PaymentOrchestrator:

    def __init__(self, gateway: PaymentGateway) -> None:
        self.gateway = gateway

    async def create_intent(
        self,
        db:       AsyncSession,
        context:  TransactionContext,
        user:     Optional[CurrentUser] = None,
        idempotency_key: Optional[str] = None,
    ) -> IntentTicket:
        user_id     = user.user_id if user else None
        customer_id = None
        if user is not None:
            customer_id = await self.gateway.ensure_customer(user.user_id, user.email, user.name)

        metadata = {
            "userId":   user_id or "anonymous",
            "storeIds": ",".join(context.store_ids),
        }
        if context.order_id is not None:
            metadata["orderId"] = str(context.order_id)

        intent = await self.gateway.create_intent(
            amount              = to_minor_units(context.amount),
            currency            = context.currency,
            metadata            = metadata,
            idempotency_key     = idempotency_key or self._idempotency_key(context, user_id),
            customer_id         = customer_id,
            payment_method_id   = context.payment_method_id,
            save_payment_method = context.save_payment_method,
        )

        tx = await PaymentRepository(db).create_transaction(
            external_id      = intent.intent_id,
            amount           = context.amount,
            currency         = context.currency,
            order_id         = context.order_id,
            user_id          = user_id,
            gateway_response = intent.raw,
        )

        logger.info(
            f"[Payments] Intent creado {intent.intent_id} tx={tx.id} "
            f"order={context.order_id} amount={context.amount} {context.currency}"
        )
        return IntentTicket(
            intent_id      = intent.intent_id,
            client_secret  = intent.client_secret or "",
            transaction_id = tx.id,
        )

    @staticmethod
    def _idempotency_key(context: TransactionContext, user_id: Optional[str]) -> str:
        if context.order_id is not None:
            return f"order-{context.order_id}-{context.amount}-{context.currency}"
        if context.verification_token:
            return f"verification-{context.verification_token}"
        # Sin orden ni verificación no hay clave natural: un intent por request
        return f"checkout-{user_id or 'anonymous'}-{uuid.uuid4().hex}"

    async def confirm(
        self,
        db:                AsyncSession,
        intent_id:         str,
        payment_method_id: Optional[str] = None,
        user_id:           Optional[str] = None,
    ) -> TransactionSnapshot:
        repo = PaymentRepository(db)
        tx   = await repo.get_transaction_by_external_id(intent_id)
        if tx is None or not self._owned_by(tx, user_id):
            raise TransactionNotFoundException(retryable=True)

        intent = await self.gateway.confirm_intent(intent_id, payment_method_id)
        tx_status, order_status, payment_status = CONFIRM_OUTCOMES.get(intent.status, CONFIRM_FAILED)

        result = await repo.transition_transaction(tx, tx_status, gateway_response=intent.raw)
        logger.info(f"[Payments] Confirm {intent_id}: intent={intent.status} tx → {tx_status.value} ({result.value})")

        if tx.order_id is not None:
            order = await repo.get_order(tx.order_id)
            if order is not None:
                await repo.transition_order(order, order_status, payment_status)

        return await self._snapshot(repo, tx)

    async def get_status(
        self,
        db:        AsyncSession,
        intent_id: Optional[str] = None,
        order_id:  Optional[int] = None,
        user_id:   Optional[str] = None,
    ) -> TransactionSnapshot:
        if (intent_id is None) == (order_id is None):
            raise CheckoutValidationException("Indica exactamente uno: intent_id u order_id.")

        repo = PaymentRepository(db)
        if intent_id is not None:
            tx = await repo.get_transaction_by_external_id(intent_id)
        else:
            order = await repo.get_order(order_id)
            if order is None or not self._owned_by(order, user_id):
                raise TransactionNotFoundException("La orden no existe.", retryable=False)
            tx = await repo.get_latest_transaction_for_order(order_id)

        if tx is None or not self._owned_by(tx, user_id):
            raise TransactionNotFoundException("La transacción todavía no está registrada.", retryable=True)
        return await self._snapshot(repo, tx)

    @staticmethod
    def _owned_by(record, user_id: Optional[str]) -> bool:
        """Sin user_id no se filtra (uso interno); con user_id el registro debe ser suyo."""
        return user_id is None or record.user_id == user_id

    async def _snapshot(self, repo: PaymentRepository, tx: PaymentTransaction) -> TransactionSnapshot:
        order = await repo.get_order(tx.order_id) if tx.order_id is not None else None
        return TransactionSnapshot(
            transaction_id       = tx.id,
            payment_intent_id    = tx.external_transaction_id,
            order_id             = tx.order_id,
            amount               = tx.amount,
            currency             = tx.currency,
            status               = TransactionStatus(tx.status),
            order_status         = OrderStatus(order.status) if order else None,
            order_payment_status = OrderPaymentStatus(order.payment_status) if order else None,
            updated_at           = tx.updated_at,
        )
