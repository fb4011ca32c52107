"""
fake_gateway.py
---------------
Proveedor de pagos simulado para desarrollo y tests.

Guarda los intents en memoria y registra cada llamada en `calls`.
Se configura en caliente para simular rechazos o caídas:

    gateway = FakeGateway()
    gateway.configure(confirm_status="requires_payment_method")
    gateway.configure(fail_with="Proveedor caído")   # → PaymentProviderException
"""

from uuid import uuid4
from typing import Optional

from checkout_trust.core.exceptions import PaymentProviderException
from checkout_trust.infrastructure.payments.gateway import (
    INTENT_SUCCEEDED,
    IntentResult,
    PaymentGateway,
)


class FakeGateway(PaymentGateway):

    def __init__(self) -> None:
        self.confirm_status: str = INTENT_SUCCEEDED
        self.fail_with: Optional[str] = None
        self.intents: dict[str, dict] = {}
        self.idempotency: dict[str, str] = {}
        self.calls: list[dict] = []

    def configure(self, confirm_status: str = INTENT_SUCCEEDED, fail_with: Optional[str] = None) -> None:
        self.confirm_status = confirm_status
        self.fail_with      = fail_with

    def _check_failure(self) -> None:
        if self.fail_with:
            raise PaymentProviderException(self.fail_with)

    def _result(self, intent: dict) -> IntentResult:
        return IntentResult(
            intent_id     = intent["id"],
            status        = intent["status"],
            client_secret = intent["client_secret"],
            amount        = intent["amount"],
            currency      = intent["currency"],
            metadata      = dict(intent["metadata"]),
            raw           = {"id": intent["id"], "status": intent["status"]},
        )

    async def ensure_customer(self, user_id, email, name=None):
        self.calls.append({"method": "ensure_customer", "user_id": user_id, "email": email})
        self._check_failure()
        return f"cus_fake_{user_id}"

    async def create_intent(
        self,
        amount,
        currency,
        metadata,
        idempotency_key,
        customer_id=None,
        payment_method_id=None,
        save_payment_method=False,
    ):
        self.calls.append({
            "method":            "create_intent",
            "amount":            amount,
            "currency":          currency,
            "metadata":          metadata,
            "idempotency_key":   idempotency_key,
            "customer_id":       customer_id,
            "payment_method_id": payment_method_id,
        })
        self._check_failure()

        if idempotency_key in self.idempotency:
            return self._result(self.intents[self.idempotency[idempotency_key]])

        intent_id = f"pi_fake_{uuid4().hex[:16]}"
        intent = {
            "id":             intent_id,
            "status":         "requires_confirmation" if payment_method_id else "requires_payment_method",
            "client_secret":  f"{intent_id}_secret_{uuid4().hex[:8]}",
            "amount":         amount,
            "currency":       currency,
            "metadata":       {k: str(v) for k, v in metadata.items()},
            "payment_method": payment_method_id,
        }
        self.intents[intent_id] = intent
        self.idempotency[idempotency_key] = intent_id
        return self._result(intent)

    async def confirm_intent(self, intent_id, payment_method_id=None):
        self.calls.append({"method": "confirm_intent", "intent_id": intent_id})
        self._check_failure()
        intent = self.intents.get(intent_id)
        if intent is None:
            raise PaymentProviderException(f"No such payment_intent: {intent_id}")
        intent["status"] = self.confirm_status
        return self._result(intent)

    async def retrieve_intent(self, intent_id):
        self.calls.append({"method": "retrieve_intent", "intent_id": intent_id})
        self._check_failure()
        intent = self.intents.get(intent_id)
        if intent is None:
            raise PaymentProviderException(f"No such payment_intent: {intent_id}")
        return self._result(intent)
