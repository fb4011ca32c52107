"""
gateway.py
----------
Puerto (interfaz abstracta) del proveedor de pagos.

El orquestador de pagos solo conoce este contrato. Adaptadores:
  - StripeGateway → SDK de Stripe (stripe.StripeClient async, producción)
  - FakeGateway   → intents en memoria (desarrollo y tests)

Los montos viajan en unidades menores (centavos), igual que en la API
del proveedor. La conversión desde Decimal la hace el orquestador.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

# Estados del payment intent en el proveedor
INTENT_SUCCEEDED  = "succeeded"
INTENT_PROCESSING = "processing"
INTENT_CANCELED   = "canceled"


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class IntentResult:
    """Vista mínima de un payment intent devuelta por cualquier adaptador."""
    intent_id:     str
    status:        str
    client_secret: Optional[str] = None
    amount:        Optional[int] = None
    currency:      Optional[str] = None
    metadata:      dict = field(default_factory=dict)
    raw:           dict = field(default_factory=dict)


class PaymentGateway(ABC):

    @abstractmethod
    async def ensure_customer(
        self,
        user_id: str,
        email:   Optional[str],
        name:    Optional[str] = None,
    ) -> Optional[str]:
        """Devuelve el id de cliente del proveedor, creándolo si no existe."""

    @abstractmethod
    async def create_intent(
        self,
        amount:              int,
        currency:            str,
        metadata:            dict,
        idempotency_key:     str,
        customer_id:         Optional[str] = None,
        payment_method_id:   Optional[str] = None,
        save_payment_method: bool = False,
    ) -> IntentResult:
        """Crea el payment intent sin confirmarlo."""

    @abstractmethod
    async def confirm_intent(
        self,
        intent_id:         str,
        payment_method_id: Optional[str] = None,
    ) -> IntentResult:
        """Confirma el intent y devuelve su estado resultante."""

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> IntentResult:
        ...

    async def aclose(self) -> None:
        """Libera recursos de red. Los adaptadores sin conexiones no hacen nada."""
