"""
redis_client.py
---------------
Cliente Redis del servicio de checkout.

Redis solo guarda estado efímero (cooldown de reenvío de códigos), así
que el servicio arranca en modo degradado si Redis no está disponible:
los chequeos de cooldown fallan abiertos y /health reporta "degraded".

  - Pool de conexiones con parámetros explícitos
  - Retry automático con backoff exponencial (3 intentos antes de fallar)
  - socket_connect_timeout separado de socket_timeout
  - decode_responses=True: todas las claves y valores son strings cortos

Uso en FastAPI (checkout_trust/main.py):
    @asynccontextmanager
    async def lifespan(app):
        await redis_manager.connect()
        yield
        await redis_manager.disconnect()
"""

import asyncio
import logging

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import BusyLoadingError, ConnectionError, RedisError, TimeoutError

from checkout_trust.core.config import settings

logger = logging.getLogger(__name__)


class RedisManager:
    """
    Gestor del cliente Redis con reconexión automática y health check.

      max_connections=50        → coroutines simultáneas esperando conexión
      socket_timeout=0.5        → máximo por operación de lectura/escritura
      socket_connect_timeout=2  → máximo para establecer la conexión
      health_check_interval=30  → el pool revisa sus conexiones cada 30s
    """

    def __init__(self, url: str | None = None):
        self.url = url or settings.REDIS_URL
        self.client: redis.Redis | None = None
        self._connected: bool = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self.client is not None

    async def connect(self) -> None:
        """
        Inicializa el pool de conexiones y verifica que Redis responda.
        Si no responde, deja el cliente creado (se reconecta solo) y
        marca el servicio como degradado en lugar de abortar el arranque.
        """
        logger.info(f"[Redis] Conectando a {self.url} ...")

        # Solo aplica a errores de red, no a errores de lógica.
        retry = Retry(
            backoff          = ExponentialBackoff(cap=0.5, base=0.1),
            retries          = 3,
            supported_errors = (ConnectionError, TimeoutError, BusyLoadingError),
        )

        self.client = redis.Redis.from_url(
            self.url,
            max_connections        = 50,
            socket_timeout         = 0.5,
            socket_connect_timeout = 2.0,
            socket_keepalive       = True,
            health_check_interval  = 30,
            retry                  = retry,
            decode_responses       = True,
        )

        self._connected = await self._health_check()
        if self._connected:
            logger.info("[Redis] Conexión establecida y verificada")
        else:
            logger.warning("[Redis] No disponible al arrancar — modo degradado")

    async def disconnect(self) -> None:
        """Cierra todas las conexiones del pool limpiamente."""
        if self.client:
            try:
                await self.client.aclose()
                logger.info("[Redis] Conexiones cerradas correctamente")
            except RedisError as e:
                logger.error(f"[Redis] Error al cerrar conexiones: {e}")
            finally:
                self._connected = False

    async def _health_check(self) -> bool:
        """Envía un PING a Redis con timeout de 2s."""
        try:
            return bool(await asyncio.wait_for(self.client.ping(), timeout=2.0))
        except asyncio.TimeoutError:
            logger.error("[Redis] Health check timeout — Redis no responde en 2s")
        except (RedisError, OSError) as e:
            logger.error(f"[Redis] Health check falló: {e}")
        return False

    async def ping(self) -> bool:
        """Health check público para el endpoint /health."""
        if not self.client:
            return False
        return await self._health_check()


redis_manager = RedisManager()
