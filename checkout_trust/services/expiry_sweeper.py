"""
expiry_sweeper.py
-----------------
Tarea de fondo que marca como expired los desafíos pendientes vencidos.

La expiración ya se aplica de forma perezosa en verify/resend; el barrido
solo libera dedup_keys y deja la tabla consistente para consultas.
Se arranca y se detiene en el lifespan de FastAPI:

    sweeper = ExpirySweeper(manager, AsyncSessionLocal, interval_seconds=60)
    await sweeper.start()
    ...
    await sweeper.stop()

interval_seconds = 0 → deshabilitado.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from checkout_trust.services.verification_service import VerificationManager

logger = logging.getLogger(__name__)


class ExpirySweeper:

    def __init__(
        self,
        manager:          VerificationManager,
        session_factory:  async_sessionmaker,
        interval_seconds: float,
    ) -> None:
        self._manager         = manager
        self._session_factory = session_factory
        self._interval        = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._interval <= 0:
            logger.info("[ExpirySweeper] Deshabilitado (VERIFICATION_SWEEP_INTERVAL_SECONDS=0)")
            return
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="verification-expiry-sweeper")
        logger.info(f"[ExpirySweeper] Iniciado cada {self._interval}s")

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.info("[ExpirySweeper] Detenido")

    async def sweep_once(self) -> int:
        async with self._session_factory() as db:
            return await self._manager.expire_stale(db)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                # Un ciclo fallido no detiene el barrido
                logger.error(f"[ExpirySweeper] Error en el barrido: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
