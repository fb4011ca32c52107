"""
checkout_service.py
-------------------
Flujo síncrono de POST /v1/checkout/submit.

  ┌─ verification_token presente ─→ check_resumable → create_intent → consume_verified → proceed
  │
  └─ evaluación de riesgo (RiskScoringEngine.assess)
        allow → create_intent                         → proceed   (200)
        warn  → VerificationManager.create (OTP email) → verification_required (202)
        deny  → orden marcada failed                   → blocked   (403)

Al retomar con un token verificado se usa el contexto de pago guardado
en el desafío, no el del request: el usuario paga exactamente lo que
verificó.
"""

import logging
from typing import Optional, Union
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.core.config import settings
from checkout_trust.core.exceptions import UnauthorizedException
from checkout_trust.domain.schemas import (
    CheckoutBlockedResponse,
    CheckoutProceedResponse,
    CheckoutVerificationResponse,
    CurrentUser,
    OrderPaymentStatus,
    OrderStatus,
    RiskDecision,
    RiskResult,
    TransactionContext,
)
from checkout_trust.infrastructure.database.payment_repository import PaymentRepository
from checkout_trust.services.payment_orchestrator import PaymentOrchestrator
from checkout_trust.services.risk_engine import RiskScoringEngine
from checkout_trust.services.verification_service import VerificationManager

logger = logging.getLogger(__name__)

CheckoutResponse = Union[CheckoutProceedResponse, CheckoutVerificationResponse, CheckoutBlockedResponse]


class CheckoutService:

    def __init__(
        self,
        engine:          RiskScoringEngine,
        verification:    VerificationManager,
        orchestrator:    PaymentOrchestrator,
        support_contact: Optional[str] = None,
    ) -> None:
        self.engine          = engine
        self.verification    = verification
        self.orchestrator    = orchestrator
        self.support_contact = support_contact or settings.SUPPORT_CONTACT

    async def submit(
        self,
        db:      AsyncSession,
        context: TransactionContext,
        user:    Optional[CurrentUser] = None,
    ) -> CheckoutResponse:
        if context.verification_token:
            return await self._resume(db, context, user)

        risk = await self.engine.assess(db, context, user)

        if risk.decision == RiskDecision.ALLOW:
            return await self._proceed(db, context, user, risk.score, risk.assessment_id)

        if risk.decision == RiskDecision.WARN:
            if user is None or not user.email:
                # El código solo puede ir al email de la cuenta autenticada
                logger.info(f"[Checkout] warn sin usuario/email de cuenta → bloqueado score={risk.score}")
                return await self._block(db, context, risk)
            return await self._challenge(db, context, user, user.email, risk)

        return await self._block(db, context, risk)

    # ── Ramas ────────────────────────────────────────────────────────

    async def _proceed(
        self,
        db:         AsyncSession,
        context:    TransactionContext,
        user:          Optional[CurrentUser],
        risk_score:    int,
        assessment_id: Optional[uuid.UUID] = None,
    ) -> CheckoutProceedResponse:
        ticket = await self.orchestrator.create_intent(db, context, user)
        return CheckoutProceedResponse(
            client_secret     = ticket.client_secret,
            payment_intent_id = ticket.intent_id,
            transaction_id    = ticket.transaction_id,
            risk_score        = risk_score,
            assessment_id     = assessment_id,
        )

    async def _challenge(
        self,
        db:      AsyncSession,
        context: TransactionContext,
        user:    CurrentUser,
        email:   str,
        risk:    RiskResult,
    ) -> CheckoutVerificationResponse:
        ticket = await self.verification.create(
            db,
            user_id         = user.user_id,
            email           = email,
            payment_context = context.payment_snapshot(),
            risk_score      = risk.score,
            risk_factors    = [f.model_dump() for f in risk.factors],
            user_name       = user.name,
        )
        logger.info(
            f"[Checkout] Verificación requerida user={user.user_id} score={risk.score} "
            f"deduplicado={ticket.deduplicated}"
        )
        return CheckoutVerificationResponse(
            verification_token = ticket.token,
            expires_at         = ticket.expires_at,
            masked_email       = ticket.masked_email,
            risk_score         = risk.score,
            assessment_id      = risk.assessment_id,
        )

    async def _block(
        self,
        db:      AsyncSession,
        context: TransactionContext,
        risk:    RiskResult,
    ) -> CheckoutBlockedResponse:
        if context.order_id is not None:
            repo  = PaymentRepository(db)
            order = await repo.get_order(context.order_id)
            if order is not None:
                await repo.transition_order(order, OrderStatus.FAILED, OrderPaymentStatus.FAILED)

        logger.warning(
            f"[Checkout] Bloqueado order={context.order_id} score={risk.score} "
            f"factors={[f.code for f in risk.factors]}"
        )
        return CheckoutBlockedResponse(
            risk_score      = risk.score,
            factors         = risk.factors,
            support_contact = self.support_contact,
            assessment_id   = risk.assessment_id,
        )

    async def _resume(
        self,
        db:      AsyncSession,
        context: TransactionContext,
        user:    Optional[CurrentUser],
    ) -> CheckoutProceedResponse:
        if user is None:
            raise UnauthorizedException()

        stored = await self.verification.check_resumable(
            db,
            token    = context.verification_token,
            user_id  = user.user_id,
            amount   = context.amount,
            currency = context.currency,
        )
        resumed = TransactionContext.model_validate(
            {**stored, "verification_token": context.verification_token}
        )
        logger.info(f"[Checkout] Retomando pago verificado user={user.user_id} amount={resumed.amount}")

        # Si el proveedor falla acá la verificación sigue disponible para reintentar
        response = await self._proceed(db, resumed, user, self.engine.score(resumed, user).score)
        await self.verification.consume_verified(db, context.verification_token)
        return response
