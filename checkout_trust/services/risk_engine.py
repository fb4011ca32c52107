"""
risk_engine.py
--------------
Motor de scoring de riesgo del checkout.

Scoring aditivo por factores: cada regla que se activa suma (o resta)
una cantidad acotada de puntos. La suma se recorta a [0, 100] y se
traduce en una decisión con dos umbrales configurables:

    score <  WARN            → allow
    WARN  <= score < DENY    → warn   (requiere verificación por email)
    score >= DENY            → deny

Factores "duros" (cantidades extremas): si uno solo aporta DENY puntos
o más, la decisión es deny aunque la suma quede por debajo.

Principios:
  - score() es una función pura del contexto: no toca red ni DB y nunca
    lanza por campos ausentes (un campo que falta suma 0).
  - Cada factor es monótono en su señal: más unidades, más monto o más
    tiendas nunca bajan el score.
  - assess() persiste la evaluación en modo best-effort: si la DB falla,
    la decisión se devuelve igual.
  - El historial de compras es el único factor que puede restar: un
    comprador con buen historial baja su score, uno malo lo sube.
"""

import logging
import math
import statistics
from decimal import Decimal
from typing import Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.core.config import settings
from checkout_trust.core.exceptions import (
    AssessmentNotFoundException,
    CheckoutValidationException,
)
from checkout_trust.domain.schemas import (
    CurrentUser,
    RiskDecision,
    RiskFactor,
    RiskResult,
    TransactionContext,
)
from checkout_trust.infrastructure.database.assessment_repository import AssessmentRepository
from checkout_trust.infrastructure.database.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)

# ── Umbrales de cada factor ───────────────────────────────────────────
HIGH_AMOUNT_THRESHOLD   = Decimal("300")   # monto a partir del cual suma
UNUSUAL_ITEM_COUNT      = 4                # más de 4 unidades en total
EXTREME_ITEM_COUNT      = 16               # más de 16 unidades en total
BULK_SINGLE_QUANTITY    = 7                # más de 7 unidades de un producto
EXTREME_BULK_QUANTITY   = 20               # más de 20 unidades de un producto
MULTIPLE_STORES         = 2                # 2+ tiendas en la misma compra
NEW_ACCOUNT_DAYS        = 7

# Sesión y login
AGED_SESSION_SECONDS    = 86_400           # 24 h
OLD_SESSION_SECONDS     = 172_800          # 48 h
MODERATE_SESSIONS       = 3
MANY_SESSIONS           = 4
SOME_FAILED_LOGINS      = 3
MANY_FAILED_LOGINS      = 6

# Historial de compras
LIMITED_HISTORY_MAX     = 4                # 1-4 compras = historial limitado
EXCELLENT_HISTORY_MIN   = 10
INACTIVE_ACCOUNT_DAYS   = 30

# Patrones de user agent (en minúsculas)
_UA_HIGH_RISK   = ("curl", "wget", "python-requests", "scrapy", "httpclient")
_UA_MEDIUM_RISK = ("bot", "crawler", "spider", "scraper", "postman", "python")

TRUSTED_ROLES = {"vendor", "admin"}


def _round_half_up(value: float) -> int:
    """Redondeo comercial: 0.5 sube, también en negativos (-7.5 → -7)."""
    return math.floor(value + 0.5)


class RiskScoringEngine:
    """
    Evalúa el riesgo de una transacción de checkout.

    Los umbrales de decisión se leen de settings pero se pueden fijar por
    instancia para tests o ajustes en caliente:
      RiskScoringEngine(warn_threshold=50, deny_threshold=80)
    """

    def __init__(
        self,
        warn_threshold: Optional[int] = None,
        deny_threshold: Optional[int] = None,
    ) -> None:
        self.warn_threshold = warn_threshold if warn_threshold is not None else settings.RISK_WARN_THRESHOLD
        self.deny_threshold = deny_threshold if deny_threshold is not None else settings.RISK_DENY_THRESHOLD
        if not 0 < self.warn_threshold < self.deny_threshold <= 100:
            raise ValueError("Se requiere 0 < warn_threshold < deny_threshold <= 100")

    # ------------------------------------------------------------------ #
    #  Entry points                                                       #
    # ------------------------------------------------------------------ #

    def score(self, context: TransactionContext, user: Optional[CurrentUser] = None) -> RiskResult:
        factors = [
            factor
            for factor in (
                self._high_amount(context),
                self._unusual_item_count(context),
                self._extreme_item_count(context),
                self._bulk_single_item(context),
                self._extreme_bulk_single(context),
                self._multiple_stores(context),
                self._anonymous_user(user),
                self._suspicious_user_agent(context),
                self._new_payment_method(context),
                self._geo_mismatch(context),
                self._recent_failures(context),
                self._payment_method_cycling(context),
                self._new_account(context),
                self._session_age(context),
                self._concurrent_sessions(context),
                self._failed_logins(context),
                self._purchase_history(context),
                self._trusted_role(user),
            )
            if factor is not None
        ]

        raw_score  = sum(f.points for f in factors)
        score      = max(0, min(100, raw_score))
        hard_max   = max((f.points for f in factors if f.hard), default=0)
        decision   = self.decide(score, hard_max)
        confidence = self._confidence(factors)

        return RiskResult(score=score, decision=decision, confidence=confidence, factors=factors)

    async def assess(
        self,
        db:      AsyncSession,
        context: TransactionContext,
        user:    Optional[CurrentUser] = None,
    ) -> RiskResult:
        """Evalúa y persiste la evaluación. La persistencia nunca bloquea la decisión."""
        result = self.score(context, user)
        assessment_id = await AssessmentRepository(db).save_assessment(context, result, user)

        logger.info(
            f"[RiskEngine] user={user.user_id if user else 'anonymous'} "
            f"amount={context.amount} score={result.score} decision={result.decision.value} "
            f"factors={[f.code for f in result.factors]}"
        )
        return result.model_copy(update={"assessment_id": assessment_id})

    async def link_orders(
        self,
        db:            AsyncSession,
        assessment_id: uuid.UUID,
        order_ids:     list[int],
        user_id:       str,
    ) -> tuple[list[int], list[int]]:
        """
        Vincula una evaluación con las órdenes que salieron de ella.

        Solo el dueño de la evaluación puede vincularla, y solo a órdenes
        propias. Devuelve (vinculadas ahora, ya vinculadas).
        """
        repo       = AssessmentRepository(db)
        assessment = await repo.get_assessment(assessment_id)
        if assessment is None or assessment.user_id != user_id:
            raise AssessmentNotFoundException()

        payments = PaymentRepository(db)
        foreign  = []
        for order_id in order_ids:
            order = await payments.get_order(order_id)
            if order is None or order.user_id != user_id:
                foreign.append(order_id)
        if foreign:
            raise CheckoutValidationException("Órdenes desconocidas.", order_ids=foreign)

        linked  = await repo.link_orders(assessment_id, order_ids)
        already = [order_id for order_id in order_ids if order_id not in linked]
        logger.info(f"[RiskEngine] assessment={assessment_id} órdenes nuevas={linked} existentes={already}")
        return linked, already

    def decide(self, score: int, hard_factor_points: int = 0) -> RiskDecision:
        if score >= self.deny_threshold or hard_factor_points >= self.deny_threshold:
            return RiskDecision.DENY
        if score >= self.warn_threshold:
            return RiskDecision.WARN
        return RiskDecision.ALLOW

    @staticmethod
    def _confidence(factors: list[RiskFactor]) -> float:
        """Más factores y más consistentes entre sí → más confianza."""
        impacts  = [abs(f.points) for f in factors]
        count    = len(impacts)
        avg      = sum(impacts) / count if count else 0.0
        variance = statistics.pvariance(impacts) if count else 0.0

        confidence  = 0.25
        confidence += min(count * 0.12, 0.5)
        confidence += min(avg / 50, 0.3)
        confidence += 0.15 if variance < 100 else 0.05
        return round(min(confidence, 0.99), 2)

    # ------------------------------------------------------------------ #
    #  Factores de la transacción                                         #
    # ------------------------------------------------------------------ #

    def _high_amount(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        if ctx.amount <= HIGH_AMOUNT_THRESHOLD:
            return None
        ratio  = float(ctx.amount / HIGH_AMOUNT_THRESHOLD)
        points = min(round(20 + (ratio - 1) * 10), 60)
        return RiskFactor(
            code        = "HIGH_AMOUNT",
            points      = points,
            description = f"Transaction amount {ctx.amount:.2f} exceeds normal threshold",
        )

    def _unusual_item_count(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        count = ctx.item_count
        if count <= UNUSUAL_ITEM_COUNT:
            return None
        return RiskFactor(
            code        = "UNUSUAL_ITEM_COUNT",
            points      = min(10 + (count - 5) * 2, 25),
            description = f"High total quantity ({count}) may indicate bulk purchasing",
        )

    def _extreme_item_count(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        count = ctx.item_count
        if count <= EXTREME_ITEM_COUNT:
            return None
        return RiskFactor(
            code        = "EXTREME_ITEM_COUNT",
            points      = min(45 + (count - 17) * 2, 80),
            description = f"Extremely high quantity ({count}) indicates potential fraud or reselling",
            hard        = True,
        )

    def _bulk_single_item(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        qty = ctx.max_single_quantity
        if qty <= BULK_SINGLE_QUANTITY:
            return None
        return RiskFactor(
            code        = "BULK_SINGLE_ITEM",
            points      = min(15 + (qty - 8) * 2, 35),
            description = f"High quantity ({qty}) of single item suggests bulk purchase",
        )

    def _extreme_bulk_single(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        qty = ctx.max_single_quantity
        if qty <= EXTREME_BULK_QUANTITY:
            return None
        return RiskFactor(
            code        = "EXTREME_BULK_SINGLE",
            points      = min(50 + (qty - 21), 90),
            description = f"Extremely high quantity ({qty}) of single item indicates potential reselling",
            hard        = True,
        )

    def _multiple_stores(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        stores = ctx.store_count
        if stores < MULTIPLE_STORES:
            return None
        return RiskFactor(
            code        = "MULTIPLE_STORES",
            points      = min(10 + (stores - 2) * 5, 25),
            description = f"Transaction spans {stores} different stores",
        )

    # ------------------------------------------------------------------ #
    #  Factores técnicos y de sesión                                      #
    # ------------------------------------------------------------------ #

    def _anonymous_user(self, user: Optional[CurrentUser]) -> Optional[RiskFactor]:
        if user is not None:
            return None
        return RiskFactor(
            code        = "ANONYMOUS_USER",
            points      = 25,
            description = "Checkout attempted without an authenticated session",
        )

    def _suspicious_user_agent(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        if not ctx.user_agent:
            return None
        ua = ctx.user_agent.lower()
        if any(p in ua for p in _UA_HIGH_RISK):
            points = 18
        elif any(p in ua for p in _UA_MEDIUM_RISK):
            points = 12
        else:
            return None
        return RiskFactor(
            code        = "SUSPICIOUS_USER_AGENT",
            points      = points,
            description = "User agent suggests automated/non-browser access",
        )

    def _new_payment_method(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        if not ctx.is_new_payment_method:
            return None
        if ctx.amount > 500:
            points = 23
        elif ctx.amount > 200:
            points = 21
        else:
            points = 19
        return RiskFactor(
            code        = "NEW_PAYMENT_METHOD",
            points      = points,
            description = "Using new/unsaved payment method",
        )

    def _geo_mismatch(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        if not ctx.ip_country or not ctx.shipping_country:
            return None
        if ctx.ip_country == ctx.shipping_country:
            return None
        return RiskFactor(
            code        = "GEO_MISMATCH",
            points      = 15,
            description = f"Request country {ctx.ip_country} differs from shipping country {ctx.shipping_country}",
        )

    # ------------------------------------------------------------------ #
    #  Historial reciente y cuenta                                        #
    # ------------------------------------------------------------------ #

    def _recent_failures(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        failures = ctx.recent_transaction_failures or 0
        if failures >= 5:
            points = 40
        elif failures >= 3:
            points = 25
        elif failures >= 1:
            points = 10
        else:
            return None
        return RiskFactor(
            code        = "RECENT_FAILURES",
            points      = points,
            description = f"{failures} failed transaction(s) in last hour",
        )

    def _payment_method_cycling(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        methods = ctx.session_payment_method_count or 0
        if methods >= 3:
            points = 30
        elif methods == 2:
            points = 10
        else:
            return None
        return RiskFactor(
            code        = "PAYMENT_METHOD_CYCLING",
            points      = points,
            description = f"Tried {methods} different payment methods in this session",
        )

    def _new_account(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        if ctx.account_age_days is None or ctx.account_age_days >= NEW_ACCOUNT_DAYS:
            return None
        return RiskFactor(
            code        = "NEW_ACCOUNT",
            points      = 10,
            description = f"Account is only {ctx.account_age_days} day(s) old",
        )

    # ------------------------------------------------------------------ #
    #  Sesión, login e historial de compras                               #
    # ------------------------------------------------------------------ #

    def _session_age(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        age = ctx.session_token_age_seconds
        if age is None or age < AGED_SESSION_SECONDS:
            return None
        hours = round(age / 3600)
        if age >= OLD_SESSION_SECONDS:
            ratio = age / OLD_SESSION_SECONDS
            return RiskFactor(
                code        = "OLD_SESSION_TOKEN",
                points      = _round_half_up(20 * min(0.8 + (ratio - 1) * 0.3, 1.3)),
                description = f"Session token is {hours} hours old (potential hijack risk)",
            )
        ratio = (age - AGED_SESSION_SECONDS) / (OLD_SESSION_SECONDS - AGED_SESSION_SECONDS)
        return RiskFactor(
            code        = "AGED_SESSION_TOKEN",
            points      = _round_half_up(10 * (0.7 + ratio * 0.3)),
            description = f"Session token is {hours} hours old",
        )

    def _concurrent_sessions(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        sessions = ctx.concurrent_sessions
        if sessions is None or sessions < MODERATE_SESSIONS:
            return None
        if sessions >= MANY_SESSIONS:
            ratio = sessions / MANY_SESSIONS
            scale = min(0.85 + ratio * 0.2 + (ratio - 1) ** 1.5 * 0.1, 1.5)
            return RiskFactor(
                code        = "CONCURRENT_SESSIONS",
                points      = _round_half_up(25 * scale),
                description = f"User has {sessions} active sessions (possible account compromise)",
            )
        return RiskFactor(
            code        = "MODERATE_CONCURRENT_SESSIONS",
            points      = _round_half_up(10 * (0.8 + (sessions - MODERATE_SESSIONS) * 0.15)),
            description = f"User has {sessions} active sessions",
        )

    def _failed_logins(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        attempts = ctx.failed_login_attempts or 0
        if attempts >= MANY_FAILED_LOGINS:
            ratio = attempts / MANY_FAILED_LOGINS
            return RiskFactor(
                code        = "FAILED_LOGIN_ATTEMPTS",
                points      = _round_half_up(30 * min(0.9 + ratio ** 1.4 * 0.25, 1.6)),
                description = f"{attempts} failed login attempts in last 24 hours (credential stuffing risk)",
            )
        if attempts >= SOME_FAILED_LOGINS:
            ratio = (attempts - SOME_FAILED_LOGINS) / (MANY_FAILED_LOGINS - SOME_FAILED_LOGINS)
            return RiskFactor(
                code        = "SOME_FAILED_LOGINS",
                points      = _round_half_up(15 * (0.75 + ratio * 0.35)),
                description = f"{attempts} failed login attempts in last 24 hours",
            )
        if attempts >= 1:
            return RiskFactor(
                code        = "FEW_FAILED_LOGINS",
                points      = _round_half_up(5 * (0.7 + attempts * 0.15)),
                description = f"{attempts} failed login attempt(s) in last 24 hours",
            )
        return None

    def _purchase_history(self, ctx: TransactionContext) -> Optional[RiskFactor]:
        """
        Historial de compras del usuario.

          0 compras      → FIRST_TIME_BUYER (atenuado si la cuenta tiene > 30 días)
          1-4 compras    → LIMITED_HISTORY_*: pesa poco, hay pocos datos
          5+ compras     → *_TRANSACTION_HISTORY / EXCELLENT_HISTORY, con
                           confianza creciente hasta ~15 compras

        Sin total_past_transactions no suma nada. Con compras pero sin
        transaction_success_rate tampoco: no hay con qué medir.
        """
        count = ctx.total_past_transactions
        if count is None:
            return None

        if count == 0:
            points = 15
            if ctx.account_age_days is not None and ctx.account_age_days > INACTIVE_ACCOUNT_DAYS:
                points = _round_half_up(points * 0.7)
            return RiskFactor(
                code        = "FIRST_TIME_BUYER",
                points      = points,
                description = "No previous transaction history (first-time buyer)",
            )

        rate = ctx.transaction_success_rate
        if rate is None:
            return None
        summary = f"{rate:.1f}% success rate over {count} transaction(s)"

        if count <= LIMITED_HISTORY_MAX:
            weight = count / LIMITED_HISTORY_MAX
            if rate >= 90:
                return RiskFactor(
                    code        = "LIMITED_HISTORY_GOOD",
                    points      = _round_half_up(-5 * (0.6 + weight * 0.4)),
                    description = f"Limited but positive history: {summary}",
                )
            if rate < 50:
                return RiskFactor(
                    code        = "LIMITED_HISTORY_POOR",
                    points      = _round_half_up(20 * (0.8 + (50 - rate) / 50 * 0.4 + weight * 0.15)),
                    description = f"Poor limited history: {summary}",
                )
            if rate < 70:
                return RiskFactor(
                    code        = "LIMITED_HISTORY_MODERATE",
                    points      = _round_half_up(8 * (0.65 + (70 - rate) / 20 * 0.35) * weight),
                    description = f"Mixed limited history: {summary}",
                )
            return None

        confidence = min(count / 15, 1.3)
        if count >= EXCELLENT_HISTORY_MIN and rate >= 95:
            return RiskFactor(
                code        = "EXCELLENT_HISTORY",
                points      = _round_half_up(-20 * (1 + (rate - 95) / 5 * 0.2) * min(count / 20, 1.5)),
                description = f"Excellent transaction history: {summary}",
            )
        if rate >= 90:
            return RiskFactor(
                code        = "GOOD_TRANSACTION_HISTORY",
                points      = _round_half_up(-15 * (1 + (rate - 90) / 10 * 0.15) * confidence),
                description = f"Good transaction history: {summary}",
            )
        if rate < 50:
            scale = min(0.85 + (50 / max(rate, 10) - 1) * 0.45, 1.6)
            return RiskFactor(
                code        = "POOR_TRANSACTION_HISTORY",
                points      = _round_half_up(25 * scale * confidence),
                description = f"Poor transaction history: {summary}",
            )
        if rate < 70:
            return RiskFactor(
                code        = "MODERATE_TRANSACTION_HISTORY",
                points      = _round_half_up(10 * (0.75 + (70 - rate) / 20 * 0.4) * confidence),
                description = f"Moderate transaction history: {summary}",
            )
        return None

    def _trusted_role(self, user: Optional[CurrentUser]) -> Optional[RiskFactor]:
        if user is None or user.role not in TRUSTED_ROLES:
            return None
        return RiskFactor(
            code        = "TRUSTED_ROLE",
            points      = -10,
            description = f"Account has trusted role: {user.role}",
        )
