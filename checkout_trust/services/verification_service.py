"""
verification_service.py
-----------------------
Gestor de verificación step-up (OTP por email) para el checkout.

Flujo completo:
  1. El motor de riesgo decide "warn" → el checkout llama create()
  2. create() genera token + código de 6 dígitos, guarda solo el hash
     (bcrypt) con expiración de 10 min y envía el email
  3. El usuario ingresa el código → verify() lo valida y devuelve el
     snapshot del pago original para retomar el checkout
  4. El checkout reenviado con el token llama check_resumable() antes de
     crear el intent y consume_verified() después: una verificación
     autoriza exactamente un pago, y un fallo del proveedor no la gasta

Máquina de estados (terminales: verified, expired):
  pending ──código correcto──→ verified
  pending ──expiración──────→ expired

Deduplicación (una compra multi-tienda puede disparar varias evaluaciones):
  clave de idempotencia user_id:tramo_de_monto:bucket, con bucket de 2 min
  y tramos de monto del ancho de la tolerancia (1 centavo por defecto).
  Se buscan el tramo propio y los dos vecinos en el bucket actual y el
  anterior; si hay un desafío pendiente, vigente, creado dentro de la
  ventana y con el monto dentro de la tolerancia, se fusiona
  el contexto nuevo en el guardado y se devuelve el mismo token sin
  enviar otro email. La columna dedup_key es UNIQUE: si dos requests
  crean a la vez, la segunda cae al camino de fusión.

Redis:
  verification:{token}:resend_cooldown → evita reenvíos seguidos (TTL 60s)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.core.config import settings
from checkout_trust.core.exceptions import (
    ChallengeExpiredException,
    ChallengeNotFoundException,
    EmailDeliveryException,
    ForbiddenChallengeException,
    InvalidCodeException,
    ResendCooldownException,
    VerificationMismatchException,
)
from checkout_trust.core.security import SecurityManager
from checkout_trust.domain.models import VerificationChallenge, utcnow
from checkout_trust.domain.schemas import ChallengeStatus, ChallengeStatusResponse
from checkout_trust.infrastructure.database.challenge_repository import (
    ChallengeRepository,
    DuplicateDedupKey,
)
from checkout_trust.infrastructure.messaging.email_service import EmailDispatcher

logger = logging.getLogger(__name__)

COOLDOWN_KEY = "verification:{token}:resend_cooldown"


@dataclass
class ChallengeTicket:
    token:        str
    expires_at:   datetime
    masked_email: str
    deduplicated: bool = False


@dataclass
class VerificationResult:
    token:           str
    payment_context: dict
    verified_at:     datetime


def _amount_of(context: dict) -> Decimal:
    return Decimal(str(context.get("amount", "0")))


class VerificationManager:
    """
    Gestiona el ciclo de vida de un desafío:
    creación → envío → verificación | reenvío | expiración.

    Recibe el EmailDispatcher y el cliente Redis por constructor; no
    usa singletons de módulo.
    """

    def __init__(
        self,
        dispatcher:              EmailDispatcher,
        redis_client:            Optional[redis.Redis] = None,
        ttl_seconds:             Optional[int] = None,
        dedup_window_seconds:    Optional[int] = None,
        amount_epsilon:          Optional[Decimal] = None,
        resend_cooldown_seconds: Optional[int] = None,
        resume_window_seconds:   Optional[int] = None,
    ) -> None:
        if ttl_seconds is None:
            ttl_seconds = settings.VERIFICATION_TTL_SECONDS
        if dedup_window_seconds is None:
            dedup_window_seconds = settings.VERIFICATION_DEDUP_WINDOW_SECONDS
        if amount_epsilon is None:
            amount_epsilon = settings.VERIFICATION_AMOUNT_EPSILON
        if resend_cooldown_seconds is None:
            resend_cooldown_seconds = settings.VERIFICATION_RESEND_COOLDOWN_SECONDS
        if resume_window_seconds is None:
            resume_window_seconds = settings.VERIFICATION_RESUME_WINDOW_SECONDS
        if dedup_window_seconds <= 0:
            raise ValueError("dedup_window_seconds debe ser mayor a 0")

        self.dispatcher      = dispatcher
        self.redis           = redis_client
        self.ttl             = timedelta(seconds=ttl_seconds)
        self.dedup_window    = dedup_window_seconds
        self.amount_epsilon  = Decimal(amount_epsilon)
        self.resend_cooldown = resend_cooldown_seconds
        self.resume_window   = timedelta(seconds=resume_window_seconds)

    # ------------------------------------------------------------------ #
    #  Creación                                                           #
    # ------------------------------------------------------------------ #

    async def create(
        self,
        db:              AsyncSession,
        user_id:         str,
        email:           str,
        payment_context: dict,
        risk_score:      int,
        risk_factors:    list[dict],
        user_name:       Optional[str] = None,
    ) -> ChallengeTicket:
        repo   = ChallengeRepository(db)
        now    = utcnow()
        amount = _amount_of(payment_context)
        own_key, lookup_keys = self._dedup_keys(user_id, amount, now)

        existing = await self._find_duplicate(repo, lookup_keys, amount, now)
        if existing is not None:
            return await self._merge(repo, existing, payment_context, risk_score, risk_factors)

        code      = SecurityManager.generate_otp()
        challenge = self._new_challenge(
            user_id, email, code, payment_context, risk_score, risk_factors, own_key, now
        )
        try:
            await repo.insert(challenge)
        except DuplicateDedupKey:
            existing = await self._find_duplicate(repo, lookup_keys, amount, now)
            if existing is not None:
                return await self._merge(repo, existing, payment_context, risk_score, risk_factors)
            # La clave la ocupa un desafío que ya no sirve para fusionar
            challenge = self._new_challenge(
                user_id, email, code, payment_context, risk_score, risk_factors, None, now
            )
            await repo.insert(challenge)

        sent = await self._dispatch(challenge, code, user_name)
        if not sent:
            # No dejar un token que nadie puede verificar
            await repo.mark_expired(challenge.token)
            logger.warning(f"[Verification] Email falló, desafío descartado user={user_id}")
            raise EmailDeliveryException()

        challenge.email_sent = True
        await repo.save(challenge)

        logger.info(
            f"[Verification] Desafío creado user={user_id} amount={amount} "
            f"expires_at={challenge.expires_at.isoformat()}"
        )
        return ChallengeTicket(
            token        = challenge.token,
            expires_at   = challenge.expires_at,
            masked_email = SecurityManager.mask_email(email),
        )

    def _dedup_keys(self, user_id: str, amount: Decimal, now: datetime) -> tuple[str, list[str]]:
        """
        Devuelve la clave propia y las claves a consultar.

        El monto se agrupa en tramos del ancho de la tolerancia: dos montos
        a menos de epsilon caen en el mismo tramo o en uno vecino, así que
        consultar tramo-1, tramo y tramo+1 en ambos buckets de tiempo
        encuentra cualquier candidato. La comparación exacta contra
        epsilon se hace después, en _find_duplicate.
        """
        cents       = int((amount * 100).to_integral_value())
        step        = max(1, int((self.amount_epsilon * 100).to_integral_value()))
        amount_slot = cents // step
        bucket      = int(now.timestamp()) // self.dedup_window

        own_key = f"{user_id}:{amount_slot}:{bucket}"
        lookup  = [
            f"{user_id}:{slot}:{b}"
            for b in (bucket, bucket - 1)
            for slot in (amount_slot, amount_slot - 1, amount_slot + 1)
        ]
        return own_key, lookup

    async def _find_duplicate(
        self,
        repo:   ChallengeRepository,
        keys:   list[str],
        amount: Decimal,
        now:    datetime,
    ) -> Optional[VerificationChallenge]:
        window_start = now - timedelta(seconds=self.dedup_window)
        for candidate in await repo.get_by_dedup_keys(keys):
            if candidate.status != ChallengeStatus.PENDING.value:
                continue
            if candidate.expires_at <= now:
                # Libera la dedup_key de un desafío vencido que nadie barrió
                await repo.mark_expired(candidate.token)
                continue
            if candidate.created_at < window_start:
                continue
            if abs(_amount_of(candidate.payment_context) - amount) > self.amount_epsilon:
                continue
            return candidate
        return None

    async def _merge(
        self,
        repo:            ChallengeRepository,
        challenge:       VerificationChallenge,
        payment_context: dict,
        risk_score:      int,
        risk_factors:    list[dict],
    ) -> ChallengeTicket:
        # Asignar un dict nuevo para que SQLAlchemy detecte el cambio en el JSON
        challenge.payment_context = {**challenge.payment_context, **payment_context}
        challenge.risk_score      = risk_score
        challenge.risk_factors    = risk_factors
        await repo.save(challenge)

        logger.info(
            f"[Verification] Evaluación duplicada fusionada en el desafío existente "
            f"user={challenge.user_id} — sin email nuevo"
        )
        return ChallengeTicket(
            token        = challenge.token,
            expires_at   = challenge.expires_at,
            masked_email = SecurityManager.mask_email(challenge.user_email),
            deduplicated = True,
        )

    def _new_challenge(
        self,
        user_id:         str,
        email:           str,
        code:            str,
        payment_context: dict,
        risk_score:      int,
        risk_factors:    list[dict],
        dedup_key:       Optional[str],
        now:             datetime,
    ) -> VerificationChallenge:
        return VerificationChallenge(
            token           = SecurityManager.generate_token(),
            user_id         = user_id,
            user_email      = email,
            otp_hash        = SecurityManager.hash_otp(code),
            payment_context = dict(payment_context),
            risk_score      = risk_score,
            risk_factors    = list(risk_factors),
            status          = ChallengeStatus.PENDING.value,
            dedup_key       = dedup_key,
            email_sent      = False,
            resend_count    = 0,
            expires_at      = now + self.ttl,
            created_at      = now,
        )

    async def _dispatch(self, challenge: VerificationChallenge, code: str, user_name: Optional[str]) -> bool:
        context = challenge.payment_context
        try:
            return await self.dispatcher.send_otp(
                to              = challenge.user_email,
                code            = code,
                user_name       = user_name,
                amount          = _amount_of(context),
                currency        = context.get("currency"),
                expires_minutes = int(self.ttl.total_seconds() // 60),
            )
        except Exception as e:
            logger.error(f"[Verification] El dispatcher de email lanzó una excepción: {e}")
            return False

    # ------------------------------------------------------------------ #
    #  Verificación                                                       #
    # ------------------------------------------------------------------ #

    async def verify(
        self,
        db:      AsyncSession,
        token:   str,
        code:    str,
        user_id: Optional[str] = None,
    ) -> VerificationResult:
        """
        NotFound  → token desconocido o ya verificado (consumido)
        Expired   → vencido, aunque el código sea correcto
        InvalidCode → no cambia el estado; se puede reintentar hasta expirar
        """
        repo      = ChallengeRepository(db)
        challenge = await self._load_live(repo, token, user_id)

        if not SecurityManager.verify_otp(code, challenge.otp_hash):
            logger.info(f"[Verification] Código incorrecto user={challenge.user_id}")
            raise InvalidCodeException()

        verified_at = utcnow()
        if not await repo.mark_verified(token, verified_at):
            # Otra request lo verificó (o lo venció) entre la lectura y el UPDATE
            current = await repo.get_by_token(token)
            if current is not None and current.status == ChallengeStatus.EXPIRED.value:
                raise ChallengeExpiredException()
            raise ChallengeNotFoundException()

        logger.info(f"[Verification] Desafío verificado user={challenge.user_id}")
        return VerificationResult(
            token           = token,
            payment_context = dict(challenge.payment_context),
            verified_at     = verified_at,
        )

    async def _load_live(
        self,
        repo:    ChallengeRepository,
        token:   str,
        user_id: Optional[str],
    ) -> VerificationChallenge:
        """Carga un desafío pendiente y vigente; aplica la expiración perezosa."""
        challenge = await repo.get_by_token(token)
        if challenge is None or challenge.status == ChallengeStatus.VERIFIED.value:
            raise ChallengeNotFoundException()
        if user_id is not None and challenge.user_id != user_id:
            raise ForbiddenChallengeException()
        if challenge.status == ChallengeStatus.EXPIRED.value:
            raise ChallengeExpiredException()
        if utcnow() > challenge.expires_at:
            await repo.mark_expired(token)
            logger.info(f"[Verification] Desafío vencido user={challenge.user_id}")
            raise ChallengeExpiredException()
        return challenge

    # ------------------------------------------------------------------ #
    #  Reenvío                                                            #
    # ------------------------------------------------------------------ #

    async def resend(
        self,
        db:        AsyncSession,
        token:     str,
        user_id:   Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> ChallengeTicket:
        repo      = ChallengeRepository(db)
        challenge = await self._load_live(repo, token, user_id)

        await self._acquire_cooldown(token)

        # Releer justo antes de enviar: pudo verificarse o vencer mientras se tomaba el cooldown
        try:
            challenge = await self._load_live(repo, token, user_id)
        except (ChallengeNotFoundException, ChallengeExpiredException):
            await self._release_cooldown(token)
            raise

        code = SecurityManager.generate_otp()
        if not await self._dispatch(challenge, code, user_name):
            await self._release_cooldown(token)
            raise EmailDeliveryException()

        # Se persiste después del envío: si el email falla, el código anterior sigue valiendo
        expires_at = utcnow() + self.ttl
        if not await repo.rotate_code(token, SecurityManager.hash_otp(code), expires_at):
            logger.warning(
                f"[Verification] El desafío cambió de estado tras el reenvío user={challenge.user_id}: "
                f"el código enviado no es válido"
            )
            raise ChallengeNotFoundException()

        logger.info(f"[Verification] Código reenviado user={challenge.user_id}")
        return ChallengeTicket(
            token        = token,
            expires_at   = expires_at,
            masked_email = SecurityManager.mask_email(challenge.user_email),
        )

    async def _acquire_cooldown(self, token: str) -> None:
        if self.redis is None:
            return
        try:
            acquired = await self.redis.set(
                COOLDOWN_KEY.format(token=token), "1", nx=True, ex=self.resend_cooldown
            )
        except RedisError as e:
            # Redis caído → sin cooldown, el reenvío sigue funcionando
            logger.warning(f"[Verification] Redis no disponible para cooldown: {e}")
            return
        if not acquired:
            raise ResendCooldownException()

    async def _release_cooldown(self, token: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.delete(COOLDOWN_KEY.format(token=token))
        except RedisError as e:
            logger.warning(f"[Verification] No se pudo liberar el cooldown: {e}")

    # ------------------------------------------------------------------ #
    #  Consultas, reanudación y barrido                                   #
    # ------------------------------------------------------------------ #

    async def get_status(self, db: AsyncSession, token: str, user_id: str) -> ChallengeStatusResponse:
        challenge = await ChallengeRepository(db).get_by_token(token)
        if challenge is None:
            raise ChallengeNotFoundException()
        if challenge.user_id != user_id:
            raise ForbiddenChallengeException()

        status = ChallengeStatus(challenge.status)
        if status == ChallengeStatus.PENDING and utcnow() > challenge.expires_at:
            # Solo lectura: se reporta vencido sin escribir
            status = ChallengeStatus.EXPIRED

        return ChallengeStatusResponse(
            token        = challenge.token,
            status       = status,
            expires_at   = challenge.expires_at,
            email_sent   = challenge.email_sent,
            masked_email = SecurityManager.mask_email(challenge.user_email),
            verified_at  = challenge.verified_at,
        )

    async def check_resumable(
        self,
        db:       AsyncSession,
        token:    str,
        user_id:  str,
        amount:   Decimal,
        currency: str,
    ) -> dict:
        """
        Valida que el pago se pueda retomar con un desafío ya verificado y
        devuelve el snapshot guardado. Solo lectura: el desafío se marca
        como usado con consume_verified() una vez creado el intent.
        """
        challenge = await ChallengeRepository(db).get_by_token(token)
        if challenge is None or challenge.resumed_at is not None:
            raise ChallengeNotFoundException()
        if challenge.user_id != user_id:
            raise ForbiddenChallengeException()
        if challenge.status == ChallengeStatus.EXPIRED.value:
            raise ChallengeExpiredException()
        if challenge.status != ChallengeStatus.VERIFIED.value:
            raise VerificationMismatchException("Esta compra todavía no fue verificada.")
        if utcnow() - challenge.verified_at > self.resume_window:
            raise ChallengeExpiredException("La verificación ya no es válida. Reinicia el checkout.")

        context = challenge.payment_context
        if abs(_amount_of(context) - amount) > self.amount_epsilon:
            raise VerificationMismatchException()
        if str(context.get("currency", "")).lower() != currency.lower():
            raise VerificationMismatchException()
        return dict(context)

    async def consume_verified(self, db: AsyncSession, token: str) -> bool:
        """
        Marca el desafío como usado para un pago. False si otra request
        concurrente ya lo marcó; ambas comparten el intent por su clave
        de idempotencia.
        """
        consumed = await ChallengeRepository(db).mark_resumed(token, utcnow())
        if not consumed:
            logger.info("[Verification] Desafío ya consumido por otra request")
        return consumed

    async def expire_stale(self, db: AsyncSession) -> int:
        expired = await ChallengeRepository(db).expire_stale(utcnow())
        if expired:
            logger.info(f"[Verification] {expired} desafío(s) vencidos por barrido")
        return expired
