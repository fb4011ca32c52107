"""
client.py
---------
Cliente HTTP del servicio para quien necesita esperar el resultado de un
pago (frontend server-side, workers de órdenes, tests end-to-end).

    async with CheckoutTrustClient("http://localhost:8000", token=jwt) as client:
        snapshot = await client.wait_for_payment(intent_id="pi_123")
        if snapshot is None:
            ...  # sigue procesando, mostrar "pago en curso"

El webhook y el confirm síncrono pueden llegar después de la primera
consulta: un 404 con "retryable": true significa "todavía no" y se
reintenta con retry_with_backoff; un 404 con "retryable": false
significa que la orden no existe y se corta de inmediato.
"""

import logging
from typing import Optional

import httpx

from checkout_trust.domain.schemas import TransactionSnapshot
from checkout_trust.services.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class PaymentNotReady(Exception):
    """La transacción todavía no está registrada; vale la pena reintentar."""


class PaymentNotFound(Exception):
    """La orden consultada no existe; reintentar no cambia nada."""


class CheckoutTrustClient:

    def __init__(
        self,
        base_url:    str,
        token:       Optional[str] = None,
        timeout:     float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url = base_url,
            timeout  = timeout,
            headers  = headers,
        )
        if http_client is not None and token:
            self._http.headers.update(headers)

    async def __aenter__(self) -> "CheckoutTrustClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def get_payment_status(
        self,
        intent_id: Optional[str] = None,
        order_id:  Optional[int] = None,
    ) -> TransactionSnapshot:
        params = {}
        if intent_id is not None:
            params["intent_id"] = intent_id
        if order_id is not None:
            params["order_id"] = order_id

        response = await self._http.get("/v1/payments/status", params=params)
        if response.status_code == 404:
            body = response.json()
            if body.get("retryable"):
                raise PaymentNotReady(body.get("message", "pago no registrado todavía"))
            raise PaymentNotFound(body.get("message", "la orden no existe"))
        response.raise_for_status()
        return TransactionSnapshot.model_validate(response.json())

    async def wait_for_payment(
        self,
        intent_id:    Optional[str] = None,
        order_id:     Optional[int] = None,
        max_attempts: int = 10,
        delay:        float = 1.0,
        backoff:      float = 1.0,
    ) -> Optional[TransactionSnapshot]:
        """
        Devuelve el snapshot en cuanto la transacción existe, o None si se
        agotaron los intentos ("todavía procesando"). PaymentNotFound y los
        errores HTTP no se reintentan.
        """
        try:
            return await retry_with_backoff(
                lambda: self.get_payment_status(intent_id=intent_id, order_id=order_id),
                max_attempts = max_attempts,
                delay        = delay,
                backoff      = backoff,
                retry_on     = (PaymentNotReady,),
            )
        except PaymentNotReady:
            logger.info(
                f"[Client] Pago sin registrar tras {max_attempts} intentos "
                f"intent={intent_id} order={order_id}"
            )
            return None
