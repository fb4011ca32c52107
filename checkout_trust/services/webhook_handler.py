"""
webhook_handler.py
------------------
Reconciliación de eventos del proveedor de pagos.

Flujo por evento:
  1. Verificar firma (Stripe-Signature) con stripe.Webhook.construct_event
                                         → 400 si no es válida, sin efectos
  2. Parsear el JSON                     → 400 si no se puede
  3. Mapear el tipo de evento a (transacción, orden, estado de pago)
  4. Sub-paso "transaction" y sub-paso "order", independientes entre sí
  5. Devolver un WebhookOutcome con un StepResult por sub-paso

Un sub-paso que falla queda registrado como "failed" y no impide que
corra el otro. Pasado el paso 2 el handler no lanza: el proveedor
reintenta los webhooks que no reciben 200 y la máquina de estados ya
absorbe los reenvíos.
"""

from dataclasses import asdict, dataclass, field
import json
import logging
from typing import Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.core.exceptions import (
    InvalidWebhookPayloadException,
    SignatureInvalidException,
)
from checkout_trust.domain.schemas import (
    OrderPaymentStatus,
    OrderStatus,
    TransactionStatus,
)
from checkout_trust.infrastructure.database.payment_repository import (
    PaymentRepository,
    TransitionResult,
)

logger = logging.getLogger(__name__)

# Estados de un StepResult
APPLIED   = "applied"
DUPLICATE = "duplicate"
SKIPPED   = "skipped"
STALE     = "stale"
IGNORED   = "ignored"
FAILED    = "failed"

# Tipo de evento → (transacción, orden, estado de pago de la orden)
EVENT_TRANSITIONS = {
    "payment_intent.succeeded":      (TransactionStatus.COMPLETED,  OrderStatus.CONFIRMED, OrderPaymentStatus.PAID),
    "payment_intent.payment_failed": (TransactionStatus.FAILED,     OrderStatus.FAILED,    OrderPaymentStatus.FAILED),
    "payment_intent.processing":     (TransactionStatus.PROCESSING, OrderStatus.PENDING,   OrderPaymentStatus.PROCESSING),
    "payment_intent.canceled":       (TransactionStatus.CANCELLED,  OrderStatus.CANCELLED, OrderPaymentStatus.CANCELLED),
}

INFORMATIONAL_EVENTS = {
    "payment_method.attached",
    "customer.created",
    "account.updated",
}


@dataclass
class StepResult:
    step:   str
    status: str
    detail: str = ""


@dataclass
class WebhookOutcome:
    event_id:   Optional[str]
    event_type: Optional[str]
    intent_id:  Optional[str] = None
    steps:      list[StepResult] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return any(s.status == FAILED for s in self.steps)

    def to_dict(self) -> dict:
        return {
            "received":   True,
            "event_id":   self.event_id,
            "event_type": self.event_type,
            "intent_id":  self.intent_id,
            "steps":      [asdict(s) for s in self.steps],
        }


class WebhookReconciliationHandler:

    def __init__(self, secret: str, tolerance: int = 300) -> None:
        self.secret    = secret
        self.tolerance = tolerance

    async def handle(self, db: AsyncSession, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        self._verify_signature(payload, signature)
        event = self._parse(payload)

        event_type = event.get("type")
        obj        = (event.get("data") or {}).get("object") or {}
        outcome    = WebhookOutcome(event_id=event.get("id"), event_type=event_type)

        if event_type in INFORMATIONAL_EVENTS:
            outcome.steps.append(StepResult("event", IGNORED, f"{event_type} es informativo"))
            logger.info(f"[Webhook] {outcome.event_id} {event_type} — informativo")
            return outcome

        transition = EVENT_TRANSITIONS.get(event_type)
        if transition is None:
            outcome.steps.append(StepResult("event", IGNORED, f"tipo no manejado: {event_type}"))
            logger.info(f"[Webhook] {outcome.event_id} tipo no manejado: {event_type}")
            return outcome

        outcome.intent_id = obj.get("id")
        if not outcome.intent_id:
            outcome.steps.append(StepResult("event", SKIPPED, "el evento no trae id de intent"))
            return outcome

        tx_status, order_status, payment_status = transition
        repo = PaymentRepository(db)

        tx_step, tx = await self._reconcile_transaction(repo, outcome.intent_id, tx_status, obj)
        outcome.steps.append(tx_step)

        order_id = tx.order_id if tx is not None and tx.order_id is not None else self._metadata_order_id(obj)
        outcome.steps.append(
            await self._reconcile_order(repo, order_id, order_status, payment_status, tx_step)
        )

        logger.info(
            f"[Webhook] {outcome.event_id} {event_type} intent={outcome.intent_id} → "
            + ", ".join(f"{s.step}={s.status}" for s in outcome.steps)
        )
        return outcome

    def _verify_signature(self, payload: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise SignatureInvalidException("Falta el header de firma.")
        try:
            stripe.Webhook.construct_event(payload, signature, self.secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[Webhook] Firma rechazada: {e.user_message or e}")
            raise SignatureInvalidException()
        except ValueError:
            # Firma válida pero el cuerpo no es JSON
            raise InvalidWebhookPayloadException()

    @staticmethod
    def _parse(payload: bytes) -> dict:
        try:
            event = json.loads(payload)
        except (ValueError, UnicodeDecodeError):
            raise InvalidWebhookPayloadException()
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            raise InvalidWebhookPayloadException()
        return event

    @staticmethod
    def _metadata_order_id(obj: dict) -> Optional[int]:
        raw = (obj.get("metadata") or {}).get("orderId")
        try:
            return int(raw) if raw not in (None, "") else None
        except (TypeError, ValueError):
            logger.warning(f"[Webhook] orderId inválido en metadata: {raw!r}")
            return None

    # ── Sub-pasos ────────────────────────────────────────────────────

    async def _reconcile_transaction(self, repo: PaymentRepository, intent_id: str, target: TransactionStatus, obj: dict):
        try:
            tx = await repo.get_transaction_by_external_id(intent_id)
            if tx is None:
                return StepResult("transaction", SKIPPED, f"no hay transacción local para {intent_id}"), None

            previous = tx.status
            result   = await repo.transition_transaction(tx, target, gateway_response=obj)
            if result == TransitionResult.APPLIED:
                return StepResult("transaction", APPLIED, f"{previous} → {target.value}"), tx
            if result == TransitionResult.DUPLICATE:
                return StepResult("transaction", DUPLICATE, f"ya estaba en {target.value}"), tx
            return StepResult("transaction", STALE, f"{tx.status} no admite {target.value}"), tx
        except Exception as e:
            logger.error(f"[Webhook] Falló la reconciliación de la transacción {intent_id}: {e}")
            return StepResult("transaction", FAILED, str(e) or e.__class__.__name__), None

    async def _reconcile_order(
        self,
        repo:           PaymentRepository,
        order_id:       Optional[int],
        status:         OrderStatus,
        payment_status: OrderPaymentStatus,
        tx_step:        StepResult,
    ) -> StepResult:
        # La orden sigue a la transacción: si el evento ya estaba aplicado
        # o llega fuera de orden, la orden no se toca.
        if tx_step.status in (DUPLICATE, STALE):
            return StepResult("order", tx_step.status, "sin cambios: la transacción no cambió")
        if order_id is None:
            return StepResult("order", SKIPPED, "el pago no está asociado a una orden")

        try:
            order = await repo.get_order(order_id)
            if order is None:
                return StepResult("order", SKIPPED, f"la orden {order_id} no existe")

            result = await repo.transition_order(order, status, payment_status)
            if result == TransitionResult.APPLIED:
                return StepResult("order", APPLIED, f"order={order_id} → {status.value}/{payment_status.value}")
            if result == TransitionResult.DUPLICATE:
                return StepResult("order", DUPLICATE, f"order={order_id} ya estaba en {status.value}")
            return StepResult("order", STALE, f"order={order_id} en {order.status} no admite {status.value}")
        except Exception as e:
            logger.error(f"[Webhook] Falló la reconciliación de la orden {order_id}: {e}")
            return StepResult("order", FAILED, str(e) or e.__class__.__name__)
