"""Motor de scoring: factores, umbrales, escenarios y persistencia best-effort."""

from decimal import Decimal
import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from checkout_trust.core.exceptions import AssessmentNotFoundException, CheckoutValidationException
from checkout_trust.domain.models import RiskAssessment, RiskAssessmentOrderLink, RiskAssessmentStoreLink
from checkout_trust.domain.schemas import CartItem, CurrentUser, RiskDecision, TransactionContext
from checkout_trust.infrastructure.database.payment_repository import PaymentRepository
from checkout_trust.services.risk_engine import RiskScoringEngine


def codes(result):
    return [f.code for f in result.factors]


class TestDecisionThresholds:

    @pytest.mark.parametrize("score, expected", [
        (0,   RiskDecision.ALLOW),
        (39,  RiskDecision.ALLOW),
        (40,  RiskDecision.WARN),
        (74,  RiskDecision.WARN),
        (75,  RiskDecision.DENY),
        (100, RiskDecision.DENY),
    ])
    def test_boundaries(self, risk_engine, score, expected):
        assert risk_engine.decide(score) == expected

    def test_hard_factor_forces_deny_below_threshold(self, risk_engine):
        assert risk_engine.decide(20, hard_factor_points=80) == RiskDecision.DENY

    def test_hard_factor_below_deny_threshold_does_not_force(self, risk_engine):
        assert risk_engine.decide(20, hard_factor_points=60) == RiskDecision.ALLOW

    def test_invalid_thresholds_rejected(self):
        with pytest.raises(ValueError):
            RiskScoringEngine(warn_threshold=80, deny_threshold=70)


class TestScenarios:

    def test_high_amount_authenticated_is_warn(self, risk_engine, make_context, user):
        context = make_context(amount="1200.00", quantity=3)
        result  = risk_engine.score(context, user)

        assert codes(result) == ["HIGH_AMOUNT"]
        assert result.score == 50
        assert result.decision == RiskDecision.WARN

    def test_small_single_item_is_allow(self, risk_engine, make_context, user):
        result = risk_engine.score(make_context(amount="50.00"), user)

        assert result.factors == []
        assert result.score == 0
        assert result.decision == RiskDecision.ALLOW

    def test_extreme_single_quantity_is_deny(self, risk_engine, make_context, user):
        result = risk_engine.score(make_context(amount="40.00", quantity=500), user)

        assert "EXTREME_BULK_SINGLE" in codes(result)
        assert "EXTREME_ITEM_COUNT" in codes(result)
        assert result.score == 100
        assert result.decision == RiskDecision.DENY

    def test_anonymous_small_purchase_still_allowed(self, risk_engine, make_context):
        result = risk_engine.score(make_context(amount="50.00"), None)

        assert codes(result) == ["ANONYMOUS_USER"]
        assert result.decision == RiskDecision.ALLOW

    @pytest.mark.parametrize("amount, score, decision", [
        ("870.00",  39, RiskDecision.ALLOW),
        ("900.00",  40, RiskDecision.WARN),
    ])
    def test_context_scores_at_warn_boundary(self, risk_engine, make_context, user, amount, score, decision):
        result = risk_engine.score(make_context(amount=amount), user)

        assert codes(result) == ["HIGH_AMOUNT"]
        assert result.score == score
        assert result.decision == decision

    def test_context_score_at_deny_boundary(self, risk_engine, make_context, user):
        context = make_context(amount="1500.00", ip_country="US", shipping_country="AU")
        result  = risk_engine.score(context, user)

        assert codes(result) == ["HIGH_AMOUNT", "GEO_MISMATCH"]
        assert result.score == 75
        assert result.decision == RiskDecision.DENY

    def test_trusted_role_pulls_deny_back_to_warn(self, risk_engine, make_context, user):
        context = make_context(amount="1500.00", ip_country="US", shipping_country="AU", failed_login_attempts=1)
        vendor  = CurrentUser(user_id="v-1", email="v@example.com", role="vendor")

        # 60 + 15 + 4 - 10 = 69
        assert risk_engine.score(context, vendor).decision == RiskDecision.WARN


class TestFactors:

    def test_amount_at_threshold_adds_nothing(self, risk_engine, make_context, user):
        assert risk_engine.score(make_context(amount="300.00"), user).score == 0

    def test_high_amount_is_capped(self, risk_engine, make_context, user):
        result = risk_engine.score(make_context(amount="99999.00"), user)
        assert result.factors[0].points == 60

    def test_item_count_tiers(self, risk_engine, make_context, user):
        assert codes(risk_engine.score(make_context(quantity=4), user)) == []
        assert codes(risk_engine.score(make_context(quantity=5), user)) == ["UNUSUAL_ITEM_COUNT"]
        assert codes(risk_engine.score(make_context(quantity=8), user)) == [
            "UNUSUAL_ITEM_COUNT", "BULK_SINGLE_ITEM",
        ]

    def test_multiple_stores(self, risk_engine, make_context, user):
        result = risk_engine.score(make_context(stores=("a", "b", "c")), user)
        factor = next(f for f in result.factors if f.code == "MULTIPLE_STORES")
        assert factor.points == 15

    def test_items_without_store_count_as_one_unknown_store(self, risk_engine, user):
        context = TransactionContext(
            amount = Decimal("20.00"),
            items  = [CartItem(product_id="a", quantity=1), CartItem(product_id="b", quantity=1)],
        )
        assert context.store_ids == ["unknown"]
        assert "MULTIPLE_STORES" not in codes(risk_engine.score(context, user))

    @pytest.mark.parametrize("user_agent, points", [
        ("curl/8.4.0", 18),
        ("Googlebot/2.1", 12),
    ])
    def test_suspicious_user_agent(self, risk_engine, make_context, user, user_agent, points):
        result = risk_engine.score(make_context(user_agent=user_agent), user)
        assert result.factors[0].code == "SUSPICIOUS_USER_AGENT"
        assert result.factors[0].points == points

    def test_browser_user_agent_adds_nothing(self, risk_engine, make_context, user):
        context = make_context(user_agent="Mozilla/5.0 (Macintosh) Safari/605.1.15")
        assert risk_engine.score(context, user).factors == []

    @pytest.mark.parametrize("amount, points", [("100.00", 19), ("250.00", 21), ("650.00", 23)])
    def test_new_payment_method_scales_with_amount(self, risk_engine, make_context, user, amount, points):
        result = risk_engine.score(make_context(amount=amount, is_new_payment_method=True), user)
        factor = next(f for f in result.factors if f.code == "NEW_PAYMENT_METHOD")
        assert factor.points == points

    def test_geo_mismatch(self, risk_engine, make_context, user):
        result = risk_engine.score(make_context(ip_country="us", shipping_country="AU"), user)
        assert codes(result) == ["GEO_MISMATCH"]

    @pytest.mark.parametrize("failures, points", [(1, 10), (3, 25), (7, 40)])
    def test_recent_failures(self, risk_engine, make_context, user, failures, points):
        result = risk_engine.score(make_context(recent_transaction_failures=failures), user)
        assert result.factors[0].points == points

    def test_payment_method_cycling(self, risk_engine, make_context, user):
        assert risk_engine.score(make_context(session_payment_method_count=2), user).score == 10
        assert risk_engine.score(make_context(session_payment_method_count=3), user).score == 30

    def test_new_account(self, risk_engine, make_context, user):
        assert codes(risk_engine.score(make_context(account_age_days=2), user)) == ["NEW_ACCOUNT"]
        assert codes(risk_engine.score(make_context(account_age_days=7), user)) == []

    def test_trusted_role_lowers_score_but_never_below_zero(self, risk_engine, make_context):
        vendor = CurrentUser(user_id="v-1", email="v@example.com", role="vendor")
        result = risk_engine.score(make_context(), vendor)
        assert codes(result) == ["TRUSTED_ROLE"]
        assert result.score == 0


class TestSessionAndHistoryFactors:

    def factor(self, risk_engine, user, make_context, **signals):
        result = risk_engine.score(make_context(**signals), user)
        assert len(result.factors) == 1, codes(result)
        return result.factors[0]

    @pytest.mark.parametrize("age, code, points", [
        (86_400,  "AGED_SESSION_TOKEN", 7),
        (172_800, "OLD_SESSION_TOKEN",  16),
        (345_600, "OLD_SESSION_TOKEN",  22),
        (10**7,   "OLD_SESSION_TOKEN",  26),
    ])
    def test_session_age(self, risk_engine, user, make_context, age, code, points):
        factor = self.factor(risk_engine, user, make_context, session_token_age_seconds=age)
        assert (factor.code, factor.points) == (code, points)

    def test_fresh_session_adds_nothing(self, risk_engine, user, make_context):
        assert risk_engine.score(make_context(session_token_age_seconds=3600), user).factors == []

    @pytest.mark.parametrize("sessions, code, points", [
        (3, "MODERATE_CONCURRENT_SESSIONS", 8),
        (4, "CONCURRENT_SESSIONS",          26),
        (8, "CONCURRENT_SESSIONS",          34),
    ])
    def test_concurrent_sessions(self, risk_engine, user, make_context, sessions, code, points):
        factor = self.factor(risk_engine, user, make_context, concurrent_sessions=sessions)
        assert (factor.code, factor.points) == (code, points)

    @pytest.mark.parametrize("attempts, code, points", [
        (1,  "FEW_FAILED_LOGINS",     4),
        (2,  "FEW_FAILED_LOGINS",     5),
        (3,  "SOME_FAILED_LOGINS",    11),
        (5,  "SOME_FAILED_LOGINS",    15),
        (12, "FAILED_LOGIN_ATTEMPTS", 47),
    ])
    def test_failed_logins(self, risk_engine, user, make_context, attempts, code, points):
        factor = self.factor(risk_engine, user, make_context, failed_login_attempts=attempts)
        assert (factor.code, factor.points) == (code, points)

    @pytest.mark.parametrize("count, rate, code, points", [
        (0,  None,  "FIRST_TIME_BUYER",             15),
        (2,  100.0, "LIMITED_HISTORY_GOOD",         -4),
        (4,  95.0,  "LIMITED_HISTORY_GOOD",         -5),
        (2,  20.0,  "LIMITED_HISTORY_POOR",         22),
        (4,  60.0,  "LIMITED_HISTORY_MODERATE",     7),
        (20, 100.0, "EXCELLENT_HISTORY",            -24),
        (15, 90.0,  "GOOD_TRANSACTION_HISTORY",     -15),
        (15, 10.0,  "POOR_TRANSACTION_HISTORY",     40),
        (15, 62.0,  "MODERATE_TRANSACTION_HISTORY", 9),
    ])
    def test_purchase_history(self, risk_engine, user, make_context, count, rate, code, points):
        factor = self.factor(
            risk_engine, user, make_context, total_past_transactions=count, transaction_success_rate=rate
        )
        assert (factor.code, factor.points) == (code, points)

    def test_first_purchase_on_old_account_weighs_less(self, risk_engine, user, make_context):
        factor = self.factor(risk_engine, user, make_context, total_past_transactions=0, account_age_days=90)
        assert factor.code == "FIRST_TIME_BUYER"
        assert 0 < factor.points < 15

    def test_history_without_rate_adds_nothing(self, risk_engine, user, make_context):
        assert risk_engine.score(make_context(total_past_transactions=8), user).factors == []

    def test_mid_range_history_adds_nothing(self, risk_engine, user, make_context):
        context = make_context(total_past_transactions=8, transaction_success_rate=80)
        assert risk_engine.score(context, user).factors == []

    def test_good_history_offsets_a_high_amount(self, risk_engine, make_context, user):
        plain   = risk_engine.score(make_context(amount="1200.00"), user)
        trusted = risk_engine.score(
            make_context(amount="1200.00", total_past_transactions=20, transaction_success_rate=100), user
        )

        assert plain.decision == RiskDecision.WARN
        assert trusted.score == plain.score - 24
        assert trusted.decision == RiskDecision.ALLOW


class TestMonotonicity:

    def test_score_never_decreases_with_amount(self, risk_engine, make_context, user):
        amounts = ["10.00", "299.99", "300.01", "500.00", "900.00", "1500.00", "5000.00"]
        scores  = [risk_engine.score(make_context(amount=a), user).score for a in amounts]
        assert scores == sorted(scores)

    def test_score_never_decreases_with_quantity(self, risk_engine, make_context, user):
        scores = [risk_engine.score(make_context(quantity=q), user).score for q in range(1, 60)]
        assert scores == sorted(scores)

    def test_score_never_decreases_with_store_count(self, risk_engine, make_context, user):
        scores = [
            risk_engine.score(make_context(stores=tuple(f"s{i}" for i in range(n))), user).score
            for n in range(1, 8)
        ]
        assert scores == sorted(scores)

    def test_confidence_is_bounded(self, risk_engine, make_context, user):
        for context in (make_context(), make_context(amount="1200.00", quantity=30)):
            assert 0 <= risk_engine.score(context, user).confidence <= 1


class TestAssessPersistence:

    @pytest.mark.asyncio
    async def test_assessment_is_persisted_with_store_links(self, risk_engine, db, user):
        context = TransactionContext(
            amount = Decimal("1200.00"),
            items  = [
                CartItem(product_id="a", store_id="store-1", quantity=1),
                CartItem(product_id="b", store_id="store-2", quantity=1),
                CartItem(product_id="c", quantity=1),
            ],
        )
        result = await risk_engine.assess(db, context, user)

        assert result.assessment_id is not None
        row = (await db.execute(select(RiskAssessment))).scalar_one()
        assert row.score == result.score
        assert row.decision == result.decision.value
        assert row.user_id == "user-1"

        links = (await db.execute(select(RiskAssessmentStoreLink.store_id))).scalars().all()
        assert sorted(links) == ["store-1", "store-2"]

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_change_decision(self, risk_engine, make_context, user):
        # Motor sin tablas: el INSERT falla
        engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            async with factory() as session:
                result = await risk_engine.assess(session, make_context(amount="1200.00"), user)
        finally:
            await engine.dispose()

        assert result.assessment_id is None
        assert result.decision == RiskDecision.WARN


class TestOrderLinks:

    @pytest.mark.asyncio
    async def test_order_from_context_is_linked_on_save(self, risk_engine, db, make_context, user):
        order  = await PaymentRepository(db).create_order(Decimal("50.00"), "aud", user_id="user-1")
        result = await risk_engine.assess(db, make_context(order_id=order.id), user)

        links = (await db.execute(select(RiskAssessmentOrderLink))).scalars().all()
        assert [(link.assessment_id, link.order_id) for link in links] == [(result.assessment_id, order.id)]

    @pytest.mark.asyncio
    async def test_link_is_idempotent(self, risk_engine, db, make_context, user):
        repo   = PaymentRepository(db)
        first  = await repo.create_order(Decimal("30.00"), "aud", user_id="user-1")
        second = await repo.create_order(Decimal("20.00"), "aud", user_id="user-1")
        result = await risk_engine.assess(db, make_context(stores=("store-1", "store-2")), user)

        linked, already = await risk_engine.link_orders(db, result.assessment_id, [first.id], "user-1")
        assert (linked, already) == ([first.id], [])

        linked, already = await risk_engine.link_orders(db, result.assessment_id, [first.id, second.id], "user-1")
        assert (linked, already) == ([second.id], [first.id])

        rows = (await db.execute(select(RiskAssessmentOrderLink.order_id))).scalars().all()
        assert sorted(rows) == sorted([first.id, second.id])

    @pytest.mark.asyncio
    async def test_unknown_or_foreign_assessment_is_not_found(self, risk_engine, db, make_context, user):
        result = await risk_engine.assess(db, make_context(), user)

        with pytest.raises(AssessmentNotFoundException):
            await risk_engine.link_orders(db, uuid.uuid4(), [1], "user-1")
        with pytest.raises(AssessmentNotFoundException):
            await risk_engine.link_orders(db, result.assessment_id, [1], "user-2")

    @pytest.mark.asyncio
    async def test_orders_of_another_user_are_rejected(self, risk_engine, db, make_context, user):
        foreign = await PaymentRepository(db).create_order(Decimal("30.00"), "aud", user_id="user-2")
        result  = await risk_engine.assess(db, make_context(), user)

        with pytest.raises(CheckoutValidationException) as exc_info:
            await risk_engine.link_orders(db, result.assessment_id, [foreign.id, 999], "user-1")

        assert exc_info.value.extra["order_ids"] == [foreign.id, 999]
        assert (await db.execute(select(RiskAssessmentOrderLink))).scalars().all() == []
