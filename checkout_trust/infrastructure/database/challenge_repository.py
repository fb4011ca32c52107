"""
challenge_repository.py
-----------------------
Acceso a `verification_challenges`.

Las transiciones de estado se hacen con UPDATE condicional
(WHERE status = 'pending'): si dos requests verifican el mismo token a la
vez, solo una ve rowcount == 1. Así no hace falta un lock en memoria.
"""

from datetime import datetime
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.core.exceptions import PersistenceException
from checkout_trust.domain.models import VerificationChallenge
from checkout_trust.domain.schemas import ChallengeStatus

logger = logging.getLogger(__name__)


class DuplicateDedupKey(Exception):
    """Otra request insertó primero un desafío con la misma dedup_key."""


class ChallengeRepository:

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_by_token(self, token: str) -> Optional[VerificationChallenge]:
        result = await self.db.execute(
            select(VerificationChallenge)
            .where(VerificationChallenge.token == token)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_dedup_keys(self, keys: list[str]) -> list[VerificationChallenge]:
        result = await self.db.execute(
            select(VerificationChallenge)
            .where(VerificationChallenge.dedup_key.in_(keys))
            .order_by(VerificationChallenge.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def insert(self, challenge: VerificationChallenge) -> VerificationChallenge:
        self.db.add(challenge)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateDedupKey(challenge.dedup_key)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[ChallengeRepository] Error insertando desafío: {e}")
            raise PersistenceException()
        return challenge

    async def save(self, challenge: VerificationChallenge) -> None:
        """Persiste cambios hechos sobre un desafío ya cargado."""
        await self._commit()

    async def mark_verified(self, token: str, verified_at: datetime) -> bool:
        return await self._transition(
            token,
            ChallengeStatus.PENDING,
            status      = ChallengeStatus.VERIFIED.value,
            verified_at = verified_at,
            dedup_key   = None,
        )

    async def mark_expired(self, token: str) -> bool:
        return await self._transition(
            token,
            ChallengeStatus.PENDING,
            status    = ChallengeStatus.EXPIRED.value,
            dedup_key = None,
        )

    async def rotate_code(self, token: str, otp_hash: str, expires_at: datetime) -> bool:
        """Reemplaza código y expiración de un desafío que sigue pendiente."""
        result = await self._execute(
            update(VerificationChallenge)
            .where(
                VerificationChallenge.token == token,
                VerificationChallenge.status == ChallengeStatus.PENDING.value,
            )
            .values(
                otp_hash     = otp_hash,
                expires_at   = expires_at,
                email_sent   = True,
                resend_count = VerificationChallenge.resend_count + 1,
            )
        )
        return result.rowcount == 1

    async def mark_resumed(self, token: str, resumed_at: datetime) -> bool:
        """Marca un desafío verificado como usado para crear un pago."""
        result = await self._execute(
            update(VerificationChallenge)
            .where(
                VerificationChallenge.token == token,
                VerificationChallenge.status == ChallengeStatus.VERIFIED.value,
                VerificationChallenge.resumed_at.is_(None),
            )
            .values(resumed_at=resumed_at)
        )
        return result.rowcount == 1

    async def expire_stale(self, now: datetime) -> int:
        result = await self._execute(
            update(VerificationChallenge)
            .where(
                VerificationChallenge.status == ChallengeStatus.PENDING.value,
                VerificationChallenge.expires_at < now,
            )
            .values(status=ChallengeStatus.EXPIRED.value, dedup_key=None)
        )
        return result.rowcount

    async def _transition(self, token: str, expected: ChallengeStatus, **values) -> bool:
        result = await self._execute(
            update(VerificationChallenge)
            .where(
                VerificationChallenge.token == token,
                VerificationChallenge.status == expected.value,
            )
            .values(**values)
        )
        return result.rowcount == 1

    async def _execute(self, stmt):
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[ChallengeRepository] Error actualizando desafíos: {e}")
            raise PersistenceException()
        return result

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[ChallengeRepository] Error guardando desafío: {e}")
            raise PersistenceException()
