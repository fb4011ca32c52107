"""
factory.py
----------
Construye el adaptador de pagos configurado en PAYMENT_GATEWAY.
Se llama una vez en el lifespan de main.py.
"""

import logging

from checkout_trust.core.config import Settings
from checkout_trust.infrastructure.payments.fake_gateway import FakeGateway
from checkout_trust.infrastructure.payments.gateway import PaymentGateway
from checkout_trust.infrastructure.payments.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    name = settings.PAYMENT_GATEWAY.lower()
    if name == "stripe":
        gateway = StripeGateway.from_settings(settings)
    elif name == "fake":
        if settings.ENVIRONMENT == "production":
            raise RuntimeError("PAYMENT_GATEWAY=fake no está permitido en producción")
        gateway = FakeGateway()
    else:
        raise RuntimeError(f"PAYMENT_GATEWAY desconocido: {settings.PAYMENT_GATEWAY}")

    logger.info(f"[Payments] Adaptador de pagos: {type(gateway).__name__}")
    return gateway
