"""
retry.py
--------
Reintento con backoff para operaciones asíncronas.

Se usa para consultar el estado de un pago que todavía no existe
localmente (el intent se crea y el webhook llega en paralelo):

    snapshot = await retry_with_backoff(
        lambda: client.get_payment_status(intent_id="pi_123"),
        max_attempts = 10,
        delay        = 1.0,
        retry_on     = (PaymentNotReady,),
    )

  - Solo se reintentan las excepciones listadas en retry_on; cualquier
    otra se propaga en el primer intento.
  - Agotados los intentos se relanza la última excepción.
  - Cancelar la tarea que espera detiene el reintento de inmediato
    (asyncio.CancelledError no se captura). La consulta es de solo
    lectura, así que abandonarla no deja estado en el servidor.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation:    Callable[[], Awaitable[T]],
    max_attempts: int = 10,
    delay:        float = 1.0,
    backoff:      float = 1.0,
    max_delay:    Optional[float] = None,
    retry_on:     tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """
    Ejecuta `operation` hasta que no lance, con espera entre intentos.

    delay   → espera antes del segundo intento
    backoff → factor multiplicativo de la espera (1.0 = espera constante)
    """
    if max_attempts < 1:
        raise ValueError("max_attempts debe ser >= 1")

    wait = delay
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == max_attempts:
                logger.info(f"[Retry] Agotados {max_attempts} intentos: {exc}")
                raise
            logger.debug(f"[Retry] Intento {attempt}/{max_attempts} falló ({exc}); esperando {wait:.2f}s")
            await asyncio.sleep(wait)
            wait = wait * backoff
            if max_delay is not None:
                wait = min(wait, max_delay)

    raise AssertionError("unreachable")
