"""
stripe_gateway.py
-----------------
Adaptador del proveedor de pagos sobre el SDK oficial de Stripe.

Usa un stripe.StripeClient persistente (creado una vez en el lifespan)
con stripe.HTTPXClient como transporte, y las variantes *_async de cada
servicio. Cada create lleva un idempotency_key: si el request se
reintenta, Stripe devuelve el mismo intent en lugar de crear otro.

El cliente se recibe por constructor; los tests inyectan uno propio
sin tocar la red.

Errores:
  - cualquier stripe.StripeError (tarjeta, red, auth) → PaymentProviderException
  - la respuesta del proveedor se loguea sin datos de tarjeta
"""

import logging
from typing import Optional

import stripe

from checkout_trust.core.config import Settings
from checkout_trust.core.exceptions import PaymentProviderException
from checkout_trust.infrastructure.payments.gateway import IntentResult, PaymentGateway

logger = logging.getLogger(__name__)


class StripeGateway(PaymentGateway):

    def __init__(self, client: stripe.StripeClient, http_client: Optional[stripe.HTTPXClient] = None):
        self._stripe      = client
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        if not settings.PAYMENT_SECRET_KEY:
            raise RuntimeError("PAYMENT_SECRET_KEY es obligatorio con PAYMENT_GATEWAY=stripe")
        http_client = stripe.HTTPXClient(timeout=settings.PAYMENT_TIMEOUT_SECONDS)
        client = stripe.StripeClient(
            settings.PAYMENT_SECRET_KEY,
            base_addresses      = {"api": settings.PAYMENT_API_BASE},
            max_network_retries = settings.PAYMENT_MAX_NETWORK_RETRIES,
            http_client         = http_client,
        )
        return cls(client, http_client=http_client)

    async def _call(self, operation: str, coro):
        try:
            return await coro
        except stripe.APIConnectionError as e:
            logger.warning(f"[Stripe] Error de red en {operation}: {e.user_message or e}")
            raise PaymentProviderException("El proveedor de pagos no respondió a tiempo.")
        except stripe.StripeError as e:
            logger.error(
                f"[Stripe] {operation} → HTTP {e.http_status} code={e.code} "
                f"type={type(e).__name__}"
            )
            raise PaymentProviderException(e.user_message or None)

    @staticmethod
    def _to_result(intent) -> IntentResult:
        metadata   = getattr(intent, "metadata", None)
        last_error = getattr(intent, "last_payment_error", None)
        return IntentResult(
            intent_id     = intent.id,
            status        = getattr(intent, "status", None) or "",
            client_secret = getattr(intent, "client_secret", None),
            amount        = getattr(intent, "amount", None),
            currency      = getattr(intent, "currency", None),
            metadata      = metadata.to_dict() if metadata else {},
            raw           = {
                "id":                 intent.id,
                "status":             getattr(intent, "status", None),
                "amount":             getattr(intent, "amount", None),
                "currency":           getattr(intent, "currency", None),
                "last_payment_error": getattr(last_error, "message", None) if last_error else None,
            },
        )

    # ------------------------------------------------------------------ #

    async def ensure_customer(self, user_id, email, name=None):
        found = await self._call(
            "customers.search",
            self._stripe.v1.customers.search_async(
                params={"query": f"metadata['userId']:'{user_id}'", "limit": 1}
            ),
        )
        if found.data:
            return found.data[0].id

        params = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        created = await self._call(
            "customers.create",
            self._stripe.v1.customers.create_async(
                params  = params,
                options = {"idempotency_key": f"customer-{user_id}"},
            ),
        )
        logger.info(f"[Stripe] Cliente creado {created.id} para user={user_id}")
        return created.id

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
        params = {
            "amount":   amount,
            "currency": currency,
            "metadata": metadata,
        }
        if customer_id:
            params["customer"] = customer_id
        if payment_method_id:
            params["payment_method"] = payment_method_id
        else:
            params["automatic_payment_methods"] = {"enabled": True}
        if save_payment_method and customer_id:
            params["setup_future_usage"] = "off_session"

        intent = await self._call(
            "payment_intents.create",
            self._stripe.v1.payment_intents.create_async(
                params  = params,
                options = {"idempotency_key": idempotency_key},
            ),
        )
        return self._to_result(intent)

    async def confirm_intent(self, intent_id, payment_method_id=None):
        params = {"payment_method": payment_method_id} if payment_method_id else {}
        intent = await self._call(
            "payment_intents.confirm",
            self._stripe.v1.payment_intents.confirm_async(intent_id, params=params),
        )
        return self._to_result(intent)

    async def retrieve_intent(self, intent_id):
        intent = await self._call(
            "payment_intents.retrieve",
            self._stripe.v1.payment_intents.retrieve_async(intent_id),
        )
        return self._to_result(intent)

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.close_async()
