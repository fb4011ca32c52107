"""
payment_repository.py
---------------------
Repositorio de transacciones de pago y órdenes.

Responsabilidades:
  - Crear la PaymentTransaction de un payment intent (una por id externo).
  - Buscar transacciones por id externo o por orden.
  - Aplicar transiciones de estado idempotentes sobre transacciones y
    órdenes. El confirm síncrono y el webhook compiten por la misma fila:
    ambos pasan por aquí y los estados terminales absorben repeticiones.

Máquina de estados de PaymentTransaction:
  pending    → processing | completed | failed | cancelled
  processing → completed | failed | cancelled
  failed     → processing | completed | cancelled   (reintento con otro método)
  completed, cancelled → terminales

Uso:
    repo   = PaymentRepository(db)
    tx     = await repo.get_transaction_by_external_id("pi_123")
    result = await repo.transition_transaction(tx, TransactionStatus.COMPLETED)
"""

from decimal import Decimal
from enum import Enum
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.core.exceptions import PersistenceException
from checkout_trust.domain.models import Order, PaymentTransaction, utcnow
from checkout_trust.domain.schemas import (
    OrderPaymentStatus,
    OrderStatus,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

_VALID_TRANSITIONS = {
    TransactionStatus.PENDING: {
        TransactionStatus.PROCESSING,
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    },
    TransactionStatus.PROCESSING: {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    },
    TransactionStatus.FAILED: {
        TransactionStatus.PROCESSING,
        TransactionStatus.COMPLETED,
        TransactionStatus.CANCELLED,
    },
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.CANCELLED: set(),
}

_VALID_ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {
        OrderStatus.PENDING,
        OrderStatus.CONFIRMED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.FAILED: {
        OrderStatus.PENDING,
        OrderStatus.CONFIRMED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.CONFIRMED: set(),
    OrderStatus.CANCELLED: set(),
}


class TransitionResult(str, Enum):
    APPLIED   = "applied"     # el estado cambió
    DUPLICATE = "duplicate"   # ya estaba en el estado destino
    STALE     = "stale"       # transición no permitida (evento tardío o fuera de orden)


class PaymentRepository:
    """
    Se instancia por request con la sesión de DB inyectada.
    Cada operación de escritura hace su propio commit.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ------------------------------------------------------------------ #
    #  Transacciones                                                      #
    # ------------------------------------------------------------------ #

    async def get_transaction_by_external_id(self, external_id: str) -> Optional[PaymentTransaction]:
        result = await self.db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.external_transaction_id == external_id
            )
        )
        return result.scalar_one_or_none()

    async def get_latest_transaction_for_order(self, order_id: int) -> Optional[PaymentTransaction]:
        result = await self.db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.order_id == order_id)
            .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_transaction(
        self,
        external_id:      str,
        amount:           Decimal,
        currency:         str,
        order_id:         Optional[int] = None,
        user_id:          Optional[str] = None,
        gateway_response: Optional[dict] = None,
    ) -> PaymentTransaction:
        """
        Inserta la transacción en estado pending.

        Si otra request ya insertó el mismo id externo (UNIQUE), se
        descarta el insert y se devuelve la fila existente.
        """
        tx = PaymentTransaction(
            external_transaction_id = external_id,
            amount                  = amount,
            currency                = currency,
            order_id                = order_id,
            user_id                 = user_id,
            status                  = TransactionStatus.PENDING.value,
            gateway_response        = gateway_response or {},
        )
        self.db.add(tx)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_transaction_by_external_id(external_id)
            if existing is None:
                raise PersistenceException("No se pudo registrar la transacción.")
            logger.info(f"[PaymentRepository] Transacción {external_id} ya existía — se reutiliza")
            return existing
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[PaymentRepository] Error creando transacción {external_id}: {e}")
            raise PersistenceException()

        await self.db.refresh(tx)
        logger.info(f"[PaymentRepository] INSERT OK — tx={tx.id} intent={external_id} order={order_id}")
        return tx

    async def transition_transaction(
        self,
        tx:               PaymentTransaction,
        target:           TransactionStatus,
        gateway_response: Optional[dict] = None,
    ) -> TransitionResult:
        """
        UPDATE condicional sobre el estado leído. Si otra request cambió la
        fila entre la lectura y el UPDATE, se recarga y se reevalúa una vez.
        """
        values = {"status": target.value, "updated_at": utcnow()}
        if gateway_response is not None:
            values["gateway_response"] = gateway_response

        for _ in range(2):
            current = TransactionStatus(tx.status)
            if current == target:
                return TransitionResult.DUPLICATE
            if target not in _VALID_TRANSITIONS[current]:
                logger.info(
                    f"[PaymentRepository] Transición ignorada tx={tx.id}: "
                    f"{current.value} → {target.value}"
                )
                return TransitionResult.STALE

            result = await self._execute(
                update(PaymentTransaction)
                .where(PaymentTransaction.id == tx.id, PaymentTransaction.status == current.value)
                .values(**values),
                f"tx={tx.id} {current.value} → {target.value}",
            )
            if result.rowcount == 1:
                return TransitionResult.APPLIED
            await self.db.refresh(tx)

        return TransitionResult.STALE

    # ------------------------------------------------------------------ #
    #  Órdenes                                                            #
    # ------------------------------------------------------------------ #

    async def get_order(self, order_id: int) -> Optional[Order]:
        return await self.db.get(Order, order_id)

    async def create_order(
        self,
        total_amount: Decimal,
        currency:     str,
        user_id:      Optional[str] = None,
    ) -> Order:
        """Lo usa el carrito (fuera de este servicio) y los tests."""
        order = Order(
            user_id        = user_id,
            total_amount   = total_amount,
            currency       = currency,
            status         = OrderStatus.PENDING.value,
            payment_status = OrderPaymentStatus.PENDING.value,
        )
        self.db.add(order)
        await self._commit(f"nueva orden user={user_id}")
        await self.db.refresh(order)
        return order

    async def transition_order(
        self,
        order:          Order,
        status:         OrderStatus,
        payment_status: OrderPaymentStatus,
    ) -> TransitionResult:
        for _ in range(2):
            current = OrderStatus(order.status)
            if current == status and order.payment_status == payment_status.value:
                return TransitionResult.DUPLICATE
            if status not in _VALID_ORDER_TRANSITIONS[current]:
                logger.info(
                    f"[PaymentRepository] Transición de orden ignorada order={order.id}: "
                    f"{current.value} → {status.value}"
                )
                return TransitionResult.STALE

            result = await self._execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.status == current.value,
                    Order.payment_status == order.payment_status,
                )
                .values(status=status.value, payment_status=payment_status.value, updated_at=utcnow()),
                f"order={order.id} → {status.value}/{payment_status.value}",
            )
            if result.rowcount == 1:
                return TransitionResult.APPLIED
            await self.db.refresh(order)

        return TransitionResult.STALE

    async def _execute(self, stmt, what: str):
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[PaymentRepository] Error persistiendo {what}: {e}")
            raise PersistenceException()
        if result.rowcount == 1:
            logger.info(f"[PaymentRepository] UPDATE OK — {what}")
        return result

    async def _commit(self, what: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[PaymentRepository] Error persistiendo {what}: {e}")
            raise PersistenceException()
        logger.info(f"[PaymentRepository] INSERT OK — {what}")
