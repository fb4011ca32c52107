"""Desafíos de verificación: creación, deduplicación, verify, resend, reanudación y barrido."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
import time

import pytest
from sqlalchemy import select, update

from checkout_trust.core.exceptions import (
    ChallengeExpiredException,
    ChallengeNotFoundException,
    EmailDeliveryException,
    ForbiddenChallengeException,
    InvalidCodeException,
    ResendCooldownException,
    VerificationMismatchException,
)
from checkout_trust.domain.models import VerificationChallenge, utcnow
from checkout_trust.domain.schemas import ChallengeStatus
from checkout_trust.infrastructure.database.challenge_repository import ChallengeRepository
from checkout_trust.services import verification_service
from checkout_trust.services.expiry_sweeper import ExpirySweeper
from checkout_trust.services.verification_service import VerificationManager

pytestmark = pytest.mark.asyncio


def payment_context(amount="1200.00", **extra):
    return {"amount": amount, "currency": "aud", "items": [{"product_id": "p1", "quantity": 1}], **extra}


async def create(manager, db, amount="1200.00", user_id="user-1", **extra):
    return await manager.create(
        db,
        user_id         = user_id,
        email           = "buyer@example.com",
        payment_context = payment_context(amount, **extra),
        risk_score      = 50,
        risk_factors    = [{"code": "HIGH_AMOUNT", "points": 50}],
        user_name       = "Ana",
    )


@pytest.fixture
def frozen_clock(monkeypatch):
    """Fija el reloj del gestor de verificación; devuelve un setter."""
    def _set(moment: datetime) -> None:
        monkeypatch.setattr(verification_service, "utcnow", lambda: moment)
    return _set


class TestCreate:

    async def test_sends_one_email_and_stores_only_the_hash(self, manager, db, dispatcher):
        ticket = await create(manager, db)

        assert len(dispatcher.sent) == 1
        assert dispatcher.sent[0]["to"] == "buyer@example.com"
        assert ticket.masked_email == "b***r@example.com"

        row = (await db.execute(select(VerificationChallenge))).scalar_one()
        assert row.status == ChallengeStatus.PENDING.value
        assert row.email_sent is True
        assert dispatcher.last_code not in row.otp_hash
        assert row.expires_at - row.created_at == timedelta(minutes=10)

    async def test_duplicate_within_window_reuses_token_without_email(self, manager, db, dispatcher):
        first  = await create(manager, db, order_id=1)
        second = await create(manager, db, order_id=2)

        assert second.token == first.token
        assert second.deduplicated is True
        assert len(dispatcher.sent) == 1

        row = (await db.execute(select(VerificationChallenge))).scalar_one()
        assert row.payment_context["order_id"] == 2

    async def test_different_amount_creates_new_challenge(self, manager, db, dispatcher):
        first  = await create(manager, db, amount="1200.00")
        second = await create(manager, db, amount="800.00")

        assert second.token != first.token
        assert len(dispatcher.sent) == 2

    async def test_different_users_never_merge(self, manager, db, dispatcher):
        first  = await create(manager, db, user_id="user-1")
        second = await create(manager, db, user_id="user-2")

        assert second.token != first.token

    async def test_expired_candidate_is_not_merged(self, manager, db, dispatcher, expire_challenge):
        first = await create(manager, db)
        await expire_challenge(first.token)

        second = await create(manager, db)

        assert second.token != first.token
        assert len(dispatcher.sent) == 2

    async def test_email_failure_raises_and_discards_challenge(self, manager, db, dispatcher):
        dispatcher.fail = True

        with pytest.raises(EmailDeliveryException):
            await create(manager, db)

        row = (await db.execute(select(VerificationChallenge))).scalar_one()
        assert row.status == ChallengeStatus.EXPIRED.value
        assert row.dedup_key is None


class TestDedupBoundaries:

    async def test_amounts_within_epsilon_share_token(self, manager, db, dispatcher):
        first  = await create(manager, db, amount="100.00")
        second = await create(manager, db, amount="100.01")

        assert second.token == first.token
        assert second.deduplicated is True
        assert len(dispatcher.sent) == 1

    async def test_amounts_beyond_epsilon_do_not_merge(self, manager, db, dispatcher):
        first  = await create(manager, db, amount="100.00")
        second = await create(manager, db, amount="100.02")

        assert second.token != first.token
        assert len(dispatcher.sent) == 2

    async def test_merges_across_bucket_boundary(self, manager, db, dispatcher, frozen_clock):
        window     = manager.dedup_window
        bucket_end = (int(time.time()) // window + 1) * window

        frozen_clock(datetime.fromtimestamp(bucket_end - 1, timezone.utc))
        first = await create(manager, db)

        frozen_clock(datetime.fromtimestamp(bucket_end + 1, timezone.utc))
        second = await create(manager, db)

        assert second.token == first.token
        assert len(dispatcher.sent) == 1

    async def test_outside_window_creates_new_challenge(self, manager, db, dispatcher, frozen_clock):
        window     = manager.dedup_window
        bucket_end = (int(time.time()) // window + 1) * window

        frozen_clock(datetime.fromtimestamp(bucket_end - window, timezone.utc))
        first = await create(manager, db)

        # Bucket vecino, pero el primero se creó hace más de una ventana
        frozen_clock(datetime.fromtimestamp(bucket_end + window - 1, timezone.utc))
        second = await create(manager, db)

        assert second.token != first.token
        assert len(dispatcher.sent) == 2

    async def test_concurrent_insert_falls_back_to_merge(self, manager, db, dispatcher, monkeypatch, frozen_clock):
        frozen_clock(datetime.now(timezone.utc))
        first    = await create(manager, db)
        original = ChallengeRepository.get_by_dedup_keys
        calls    = []

        async def stale_first_read(self, keys):
            calls.append(keys)
            if len(calls) == 1:
                # La otra request todavía no había confirmado su INSERT
                return []
            return await original(self, keys)

        monkeypatch.setattr(ChallengeRepository, "get_by_dedup_keys", stale_first_read)

        second = await create(manager, db)

        assert len(calls) == 2
        assert second.token == first.token
        assert second.deduplicated is True
        assert len(dispatcher.sent) == 1
        rows = (await db.execute(select(VerificationChallenge))).scalars().all()
        assert len(rows) == 1


class TestVerify:

    async def test_correct_code_returns_payment_context(self, manager, db, dispatcher):
        ticket = await create(manager, db)

        result = await manager.verify(db, ticket.token, dispatcher.last_code, user_id="user-1")

        assert result.payment_context["amount"] == "1200.00"
        row = (await db.execute(select(VerificationChallenge))).scalar_one()
        assert row.status == ChallengeStatus.VERIFIED.value
        assert row.verified_at is not None

    async def test_second_verify_is_not_found(self, manager, db, dispatcher):
        ticket = await create(manager, db)
        code   = dispatcher.last_code
        await manager.verify(db, ticket.token, code)

        with pytest.raises(ChallengeNotFoundException):
            await manager.verify(db, ticket.token, code)

    async def test_wrong_code_leaves_challenge_pending(self, manager, db, dispatcher):
        ticket = await create(manager, db)
        wrong  = "000000" if dispatcher.last_code != "000000" else "111111"

        with pytest.raises(InvalidCodeException):
            await manager.verify(db, ticket.token, wrong)

        # Se puede reintentar con el código correcto
        await manager.verify(db, ticket.token, dispatcher.last_code)

    async def test_expired_even_with_correct_code(self, manager, db, dispatcher, expire_challenge):
        ticket = await create(manager, db)
        await expire_challenge(ticket.token)

        with pytest.raises(ChallengeExpiredException):
            await manager.verify(db, ticket.token, dispatcher.last_code)

        row = (await db.execute(select(VerificationChallenge))).scalar_one()
        assert row.status == ChallengeStatus.EXPIRED.value

    async def test_unknown_token(self, manager, db):
        with pytest.raises(ChallengeNotFoundException):
            await manager.verify(db, "f" * 64, "123456")

    async def test_other_users_token_is_forbidden(self, manager, db, dispatcher):
        ticket = await create(manager, db)

        with pytest.raises(ForbiddenChallengeException):
            await manager.verify(db, ticket.token, dispatcher.last_code, user_id="intruder")


class TestResend:

    async def test_rotates_code(self, manager, db, dispatcher):
        ticket   = await create(manager, db)
        old_code = dispatcher.last_code

        resent = await manager.resend(db, ticket.token, user_id="user-1")

        assert resent.token == ticket.token
        assert len(dispatcher.sent) == 2
        row = (await db.execute(select(VerificationChallenge))).scalar_one()
        assert row.resend_count == 1
        if dispatcher.last_code != old_code:
            with pytest.raises(InvalidCodeException):
                await manager.verify(db, ticket.token, old_code)
        await manager.verify(db, ticket.token, dispatcher.last_code)

    async def test_cooldown_blocks_second_resend(self, manager, db, dispatcher):
        ticket = await create(manager, db)
        await manager.resend(db, ticket.token)

        with pytest.raises(ResendCooldownException):
            await manager.resend(db, ticket.token)

    async def test_email_failure_keeps_previous_code(self, manager, db, dispatcher):
        ticket   = await create(manager, db)
        old_code = dispatcher.last_code
        dispatcher.fail = True

        with pytest.raises(EmailDeliveryException):
            await manager.resend(db, ticket.token)

        dispatcher.fail = False
        await manager.verify(db, ticket.token, old_code)

    async def test_expired_challenge_cannot_be_resent(self, manager, db, expire_challenge):
        ticket = await create(manager, db)
        await expire_challenge(ticket.token)

        with pytest.raises(ChallengeExpiredException):
            await manager.resend(db, ticket.token)

    async def test_works_without_redis(self, dispatcher, db):
        manager = VerificationManager(dispatcher, redis_client=None)
        ticket  = await create(manager, db)
        await manager.resend(db, ticket.token)
        await manager.resend(db, ticket.token)

        assert len(dispatcher.sent) == 3

    async def test_no_email_when_verified_before_dispatch(self, manager, db, dispatcher, monkeypatch):
        ticket = await create(manager, db)

        async def verified_meanwhile(token):
            await ChallengeRepository(db).mark_verified(token, utcnow())

        monkeypatch.setattr(manager, "_acquire_cooldown", verified_meanwhile)

        with pytest.raises(ChallengeNotFoundException):
            await manager.resend(db, ticket.token)

        assert len(dispatcher.sent) == 1

    async def test_state_change_after_dispatch_is_reported(self, manager, db, dispatcher, monkeypatch):
        ticket = await create(manager, db)

        async def rotate_lost(self, token, otp_hash, expires_at):
            return False

        monkeypatch.setattr(ChallengeRepository, "rotate_code", rotate_lost)

        with pytest.raises(ChallengeNotFoundException):
            await manager.resend(db, ticket.token)

        assert len(dispatcher.sent) == 2


class TestStatusAndResume:

    async def test_status_reports_expiry_without_writing(self, manager, db, expire_challenge):
        ticket = await create(manager, db)
        await expire_challenge(ticket.token)

        status = await manager.get_status(db, ticket.token, "user-1")

        assert status.status == ChallengeStatus.EXPIRED
        row = (await db.execute(select(VerificationChallenge))).scalar_one()
        assert row.status == ChallengeStatus.PENDING.value

    async def test_check_does_not_consume(self, manager, db, dispatcher):
        ticket = await create(manager, db)
        await manager.verify(db, ticket.token, dispatcher.last_code)

        first  = await manager.check_resumable(db, ticket.token, "user-1", Decimal("1200.00"), "AUD")
        second = await manager.check_resumable(db, ticket.token, "user-1", Decimal("1200.00"), "aud")

        assert first["amount"] == second["amount"] == "1200.00"
        row = (await db.execute(select(VerificationChallenge))).scalar_one()
        assert row.resumed_at is None

    async def test_consume_verified_once(self, manager, db, dispatcher):
        ticket = await create(manager, db)
        await manager.verify(db, ticket.token, dispatcher.last_code)

        assert await manager.consume_verified(db, ticket.token) is True
        assert await manager.consume_verified(db, ticket.token) is False

        with pytest.raises(ChallengeNotFoundException):
            await manager.check_resumable(db, ticket.token, "user-1", Decimal("1200.00"), "aud")

    async def test_check_rejects_other_user(self, manager, db, dispatcher):
        ticket = await create(manager, db)
        await manager.verify(db, ticket.token, dispatcher.last_code)

        with pytest.raises(ForbiddenChallengeException):
            await manager.check_resumable(db, ticket.token, "intruder", Decimal("1200.00"), "aud")

    async def test_check_requires_verification(self, manager, db):
        ticket = await create(manager, db)

        with pytest.raises(VerificationMismatchException):
            await manager.check_resumable(db, ticket.token, "user-1", Decimal("1200.00"), "aud")

    async def test_check_rejects_different_amount(self, manager, db, dispatcher):
        ticket = await create(manager, db)
        await manager.verify(db, ticket.token, dispatcher.last_code)

        with pytest.raises(VerificationMismatchException):
            await manager.check_resumable(db, ticket.token, "user-1", Decimal("1.00"), "aud")

    async def test_check_after_resume_window(self, manager, db, dispatcher):
        ticket = await create(manager, db)
        await manager.verify(db, ticket.token, dispatcher.last_code)
        await db.execute(
            update(VerificationChallenge)
            .where(VerificationChallenge.token == ticket.token)
            .values(verified_at=utcnow() - timedelta(minutes=11))
        )
        await db.commit()

        with pytest.raises(ChallengeExpiredException):
            await manager.check_resumable(db, ticket.token, "user-1", Decimal("1200.00"), "aud")


class TestExpirySweep:

    async def test_expire_stale_marks_only_past_due(self, manager, db, expire_challenge):
        stale = await create(manager, db, amount="100.00")
        fresh = await create(manager, db, amount="200.00")
        await expire_challenge(stale.token)

        assert await manager.expire_stale(db) == 1

        rows = {r.token: r.status for r in (await db.execute(select(VerificationChallenge))).scalars()}
        assert rows[stale.token] == ChallengeStatus.EXPIRED.value
        assert rows[fresh.token] == ChallengeStatus.PENDING.value

    async def test_sweeper_runs_one_pass(self, manager, db, session_factory, expire_challenge):
        ticket = await create(manager, db)
        await expire_challenge(ticket.token)

        sweeper = ExpirySweeper(manager, session_factory, interval_seconds=60)
        assert await sweeper.sweep_once() == 1

    async def test_sweeper_disabled_with_zero_interval(self, manager, session_factory):
        sweeper = ExpirySweeper(manager, session_factory, interval_seconds=0)
        await sweeper.start()

        assert sweeper.running is False
        await sweeper.stop()

    async def test_sweeper_start_and_stop(self, manager, session_factory):
        sweeper = ExpirySweeper(manager, session_factory, interval_seconds=30)
        await sweeper.start()
        assert sweeper.running is True

        await sweeper.stop()
        assert sweeper.running is False


class TestConfiguration:

    async def test_explicit_zero_overrides_settings(self, dispatcher):
        manager = VerificationManager(
            dispatcher,
            ttl_seconds             = 0,
            amount_epsilon          = Decimal("0"),
            resend_cooldown_seconds = 0,
            resume_window_seconds   = 0,
        )

        assert manager.ttl == timedelta(0)
        assert manager.amount_epsilon == Decimal("0")
        assert manager.resend_cooldown == 0
        assert manager.resume_window == timedelta(0)

    async def test_omitted_values_come_from_settings(self, dispatcher):
        manager = VerificationManager(dispatcher)

        assert manager.ttl == timedelta(minutes=10)
        assert manager.dedup_window == 120

    async def test_zero_dedup_window_is_rejected(self, dispatcher):
        with pytest.raises(ValueError):
            VerificationManager(dispatcher, dedup_window_seconds=0)
