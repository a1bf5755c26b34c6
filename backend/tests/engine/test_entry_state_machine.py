"""
Hole-in-One Engine - Entry State Machine Tests
==============================================

Creation, payment, attempt window, outcome reporting, auto-miss and
play-again.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import func, select

from holeinone.core.config import settings
from holeinone.core.engine.clock import as_utc
from holeinone.core.engine.entries import EntryStateMachine, PaymentFact
from holeinone.core.engine.results import Reason, ResultKind
from holeinone.core.engine.verification import VerificationWorkflow
from holeinone.core.models import (
    CompetitionStatus,
    Entry,
    EntryOutcome,
    EntryPath,
    EntryStatus,
    Verification,
    VerificationStatus,
)


STRIPE_PAYMENT = PaymentFact(paid=True, amount_minor=500, payment_provider="stripe")


async def count_entries(session) -> int:
    return await session.scalar(select(func.count()).select_from(Entry))


# ==========================================================================
# Creation
# ==========================================================================

class TestCreateEntry:
    """Tests for create_entry."""

    async def test_free_competition_opens_window(self, db_session, clock, competition, player_id):
        result = await EntryStateMachine(db_session, clock=clock).create_entry(
            player_id, competition.id, now=clock.now()
        )

        assert result.ok
        entry = result.value
        assert entry.status == EntryStatus.ACTIVE
        assert entry.paid is True
        assert entry.amount_minor == 0
        assert entry.window_minutes == 15
        assert entry.attempt_window_end - entry.attempt_window_start == timedelta(minutes=15)
        assert entry.outcome_self is None

    async def test_paid_fact_opens_window(self, db_session, clock, paid_competition, player_id):
        result = await EntryStateMachine(db_session, clock=clock).create_entry(
            player_id, paid_competition.id, payment=STRIPE_PAYMENT, now=clock.now()
        )

        assert result.ok
        entry = result.value
        assert entry.status == EntryStatus.PAID
        assert entry.amount_minor == 500
        assert entry.payment_provider == "stripe"
        assert entry.attempt_window_start is not None

    async def test_unpaid_entry_is_pending_without_window(
        self, db_session, clock, paid_competition, player_id
    ):
        result = await EntryStateMachine(db_session, clock=clock).create_entry(
            player_id, paid_competition.id, now=clock.now()
        )

        assert result.ok
        assert result.value.status == EntryStatus.PENDING
        assert result.value.paid is False
        assert result.value.attempt_window_start is None
        assert result.value.attempt_window_end is None

    async def test_declined_payment_writes_nothing(
        self, db_session, clock, paid_competition, player_id
    ):
        result = await EntryStateMachine(db_session, clock=clock).create_entry(
            player_id, paid_competition.id, payment=PaymentFact(paid=False), now=clock.now()
        )

        assert result.kind == ResultKind.PRECONDITION_FAILED
        assert result.reason == Reason.PAYMENT_NOT_CONFIRMED
        assert await count_entries(db_session) == 0

    async def test_unknown_competition(self, db_session, clock, player_id):
        result = await EntryStateMachine(db_session, clock=clock).create_entry(
            player_id, uuid4(), now=clock.now()
        )
        assert result.kind == ResultKind.VALIDATION
        assert result.reason == Reason.COMPETITION_NOT_FOUND

    async def test_inactive_competitions_refuse_entries(
        self, db_session, clock, make_competition, player_id
    ):
        scheduled = await make_competition(status=CompetitionStatus.SCHEDULED)
        ended = await make_competition(end_date=clock.now() - timedelta(days=1))
        machine = EntryStateMachine(db_session, clock=clock)

        for competition_id in (scheduled.id, ended.id):
            result = await machine.create_entry(player_id, competition_id, now=clock.now())
            assert result.reason == Reason.COMPETITION_INACTIVE

    async def test_window_length_follows_entry_path(
        self, db_session, clock, competition, player_id
    ):
        result = await EntryStateMachine(db_session, clock=clock).create_entry(
            player_id, competition.id, entry_path=EntryPath.MAGIC_LINK, now=clock.now()
        )
        assert result.value.window_minutes == 360
        assert as_utc(result.value.attempt_window_end) == clock.now() + timedelta(hours=6)

    async def test_terms_acceptance_recorded(self, db_session, clock, competition, player_id):
        result = await EntryStateMachine(db_session, clock=clock).create_entry(
            player_id, competition.id, terms_version="2024-01", now=clock.now()
        )
        assert result.value.terms_version == "2024-01"
        assert as_utc(result.value.terms_accepted_at) == clock.now()

    async def test_terms_version_defaults_to_current_terms(
        self, db_session, clock, competition, player_id
    ):
        result = await EntryStateMachine(db_session, clock=clock).create_entry(
            player_id, competition.id, now=clock.now()
        )
        assert result.value.terms_version == settings.TERMS_VERSION

    async def test_underpayment_writes_nothing(
        self, db_session, clock, paid_competition, player_id
    ):
        result = await EntryStateMachine(db_session, clock=clock).create_entry(
            player_id,
            paid_competition.id,
            payment=PaymentFact(paid=True, amount_minor=499, payment_provider="stripe"),
            now=clock.now(),
        )

        assert result.kind == ResultKind.PRECONDITION_FAILED
        assert result.reason == Reason.PAYMENT_NOT_CONFIRMED
        assert await count_entries(db_session) == 0


# ==========================================================================
# Payment
# ==========================================================================

class TestConfirmPayment:
    """Tests for confirm_payment."""

    async def test_pending_entry_opens_window_on_payment(
        self, db_session, clock, paid_competition, player_id
    ):
        machine = EntryStateMachine(db_session, clock=clock)
        pending = await machine.create_entry(player_id, paid_competition.id, now=clock.now())
        entry_id = pending.value.id

        clock.advance(minutes=3)
        result = await machine.confirm_payment(entry_id, STRIPE_PAYMENT, clock.now())

        assert result.ok
        entry = result.value
        assert entry.status == EntryStatus.PAID
        assert entry.paid is True
        assert as_utc(entry.attempt_window_start) == clock.now()
        assert as_utc(entry.attempt_window_end) == clock.now() + timedelta(minutes=15)

    async def test_second_confirmation_is_race_lost(
        self, db_session, clock, paid_competition, player_id
    ):
        machine = EntryStateMachine(db_session, clock=clock)
        pending = await machine.create_entry(player_id, paid_competition.id, now=clock.now())
        entry_id = pending.value.id

        assert (await machine.confirm_payment(entry_id, STRIPE_PAYMENT, clock.now())).ok
        again = await machine.confirm_payment(entry_id, STRIPE_PAYMENT, clock.now())

        assert again.kind == ResultKind.RACE_LOST
        assert again.reason == Reason.ALREADY_PAID
        assert again.value.status == EntryStatus.PAID

    async def test_unknown_entry(self, db_session, clock):
        result = await EntryStateMachine(db_session, clock=clock).confirm_payment(
            uuid4(), STRIPE_PAYMENT, clock.now()
        )
        assert result.reason == Reason.ENTRY_NOT_FOUND

    async def test_underpayment_leaves_entry_pending(
        self, db_session, clock, paid_competition, player_id
    ):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, paid_competition.id, now=clock.now())).value.id

        for payment in (
            PaymentFact(paid=True, amount_minor=1),
            PaymentFact(paid=True, amount_minor=None),
        ):
            result = await machine.confirm_payment(entry_id, payment, clock.now())
            assert result.kind == ResultKind.PRECONDITION_FAILED
            assert result.reason == Reason.PAYMENT_NOT_CONFIRMED

        entry = await db_session.get(Entry, entry_id, populate_existing=True)
        assert entry.status == EntryStatus.PENDING
        assert entry.paid is False
        assert entry.attempt_window_start is None

    async def test_payment_can_switch_entry_path(
        self, db_session, clock, paid_competition, player_id
    ):
        machine = EntryStateMachine(
            db_session,
            clock=clock,
            window_minutes={"instant": 15, "magic_link": 360, "staff_code": 30},
        )
        entry_id = (await machine.create_entry(player_id, paid_competition.id, now=clock.now())).value.id

        result = await machine.confirm_payment(
            entry_id, STRIPE_PAYMENT, clock.now(), entry_path=EntryPath.STAFF_CODE
        )

        assert result.ok
        assert result.value.entry_path == EntryPath.STAFF_CODE
        assert result.value.window_minutes == 30
        assert as_utc(result.value.attempt_window_end) == clock.now() + timedelta(minutes=30)


# ==========================================================================
# Outcome
# ==========================================================================

class TestReportOutcome:
    """Tests for report_outcome."""

    async def test_miss_completes_entry(self, db_session, clock, competition, player_id):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id

        clock.advance(minutes=5)
        result = await machine.report_outcome(entry_id, "miss", clock.now(), player_id=player_id)

        assert result.ok
        assert result.value.outcome_self == EntryOutcome.MISS
        assert result.value.status == EntryStatus.COMPLETED
        assert as_utc(result.value.outcome_reported_at) == clock.now()
        assert as_utc(result.value.completed_at) == clock.now()

        verifications = await db_session.scalar(select(func.count()).select_from(Verification))
        assert verifications == 0

    async def test_win_opens_verification(self, db_session, clock, competition, player_id):
        """Win at +10m: verification pending, deadline 12h after the report."""
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id
        start = clock.now()

        clock.advance(minutes=10)
        result = await machine.report_outcome(entry_id, EntryOutcome.WIN, clock.now())

        assert result.ok
        verification = (await VerificationWorkflow(db_session, clock=clock).get_for_entry(entry_id)).value
        assert verification.status == VerificationStatus.PENDING
        assert verification.auto_miss_applied is False
        assert as_utc(verification.auto_miss_at) == start + timedelta(minutes=10, hours=12)

    async def test_only_win_or_miss_reportable(self, db_session, clock, competition, player_id):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id

        for outcome in ("auto_miss", "eagle"):
            result = await machine.report_outcome(entry_id, outcome, clock.now())
            assert result.kind == ResultKind.VALIDATION
            assert result.reason == Reason.INVALID_OUTCOME

    async def test_other_player_cannot_report(self, db_session, clock, competition, player_id):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id

        result = await machine.report_outcome(entry_id, "win", clock.now(), player_id=uuid4())
        assert result.reason == Reason.NOT_OWNER

    async def test_pending_entry_has_no_window(
        self, db_session, clock, paid_competition, player_id
    ):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, paid_competition.id, now=clock.now())).value.id

        result = await machine.report_outcome(entry_id, "miss", clock.now())
        assert result.kind == ResultKind.PRECONDITION_FAILED
        assert result.reason == Reason.WINDOW_NOT_OPEN

    async def test_report_after_window_closes(self, db_session, clock, competition, player_id):
        """A late report is refused and the entry is auto-missed on the spot."""
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id

        clock.advance(minutes=16)
        result = await machine.report_outcome(entry_id, "win", clock.now())

        assert result.kind == ResultKind.PRECONDITION_FAILED
        assert result.reason == Reason.WINDOW_CLOSED
        assert result.value.outcome_self == EntryOutcome.AUTO_MISS
        assert result.value.status == EntryStatus.EXPIRED

    async def test_report_at_window_end_is_accepted(
        self, db_session, clock, competition, player_id
    ):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id

        clock.advance(minutes=15)
        assert (await machine.report_outcome(entry_id, "miss", clock.now())).ok

    async def test_outcome_is_immutable(self, db_session, clock, competition, player_id):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id

        assert (await machine.report_outcome(entry_id, "miss", clock.now())).ok
        again = await machine.report_outcome(entry_id, "win", clock.now())

        assert again.kind == ResultKind.RACE_LOST
        assert again.reason == Reason.ALREADY_REPORTED
        assert again.value.outcome_self == EntryOutcome.MISS

    async def test_concurrent_reports_single_winner(
        self, session_factory, db_session, clock, competition, player_id
    ):
        """win and miss submitted together: one write lands, the other sees it."""
        created = await EntryStateMachine(db_session, clock=clock).create_entry(
            player_id, competition.id, now=clock.now()
        )
        entry_id = created.value.id
        clock.advance(minutes=5)

        async def report(outcome):
            async with session_factory() as session:
                return await EntryStateMachine(session, clock=clock).report_outcome(
                    entry_id, outcome, clock.now()
                )

        first, second = await asyncio.gather(report("win"), report("miss"))

        assert [first.ok, second.ok].count(True) == 1
        winner, loser = (first, second) if first.ok else (second, first)
        assert loser.kind == ResultKind.RACE_LOST
        assert loser.value.outcome_self == winner.value.outcome_self

        async with session_factory() as session:
            stored = await session.get(Entry, entry_id)
            assert stored.outcome_self == winner.value.outcome_self
            verifications = await session.scalar(select(func.count()).select_from(Verification))
        assert verifications == (1 if stored.outcome_self == EntryOutcome.WIN else 0)


# ==========================================================================
# Auto-miss
# ==========================================================================

class TestAutoMiss:
    """Read-time discovery and the sweep."""

    async def test_sweep_auto_misses_lapsed_window(
        self, db_session, clock, paid_competition, player_id
    ):
        """Window now..now+15m, sweep at now+16m."""
        machine = EntryStateMachine(db_session, clock=clock)
        created = await machine.create_entry(
            player_id, paid_competition.id, payment=STRIPE_PAYMENT, now=clock.now()
        )
        entry_id = created.value.id

        clock.advance(minutes=16)
        changed = await machine.sweep_expired_entries(clock.now())

        assert changed == [entry_id]
        entry = (await machine.get_entry(entry_id, clock.now())).value
        assert entry.outcome_self == EntryOutcome.AUTO_MISS
        assert entry.status == EntryStatus.EXPIRED
        assert as_utc(entry.completed_at) == clock.now()

    async def test_sweep_is_idempotent(self, db_session, clock, competition, player_id):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id

        clock.advance(minutes=20)
        first = await machine.sweep_expired_entries(clock.now())
        stamped = (await machine.get_entry(entry_id, clock.now())).value.outcome_reported_at

        clock.advance(minutes=5)
        second = await machine.sweep_expired_entries(clock.now())
        entry = (await machine.get_entry(entry_id, clock.now())).value

        assert first == [entry_id]
        assert second == []
        assert entry.outcome_reported_at == stamped

    async def test_sweep_skips_open_and_reported_entries(
        self, db_session, clock, make_competition, player_id
    ):
        """Reported entries keep their outcome and pending ones have no window."""
        free = await make_competition()
        paid = await make_competition(entry_fee=500)
        machine = EntryStateMachine(db_session, clock=clock)

        reported = (await machine.create_entry(player_id, free.id, now=clock.now())).value.id
        await machine.report_outcome(reported, "win", clock.now())
        pending = (await machine.create_entry(player_id, paid.id, now=clock.now())).value.id

        clock.advance(hours=1)
        assert await machine.sweep_expired_entries(clock.now()) == []

        assert (await machine.get_entry(reported, clock.now())).value.outcome_self == EntryOutcome.WIN
        assert (await machine.get_entry(pending, clock.now())).value.status == EntryStatus.PENDING

    async def test_read_discovers_overdue_entry(self, db_session, clock, competition, player_id):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id

        clock.advance(minutes=15)
        assert (await machine.get_entry(entry_id, clock.now())).value.outcome_self is None

        clock.advance(seconds=1)
        entry = (await machine.get_entry(entry_id, clock.now())).value
        assert entry.outcome_self == EntryOutcome.AUTO_MISS

    async def test_concurrent_sweeps_change_each_entry_once(
        self, session_factory, db_session, clock, make_competition
    ):
        machine = EntryStateMachine(db_session, clock=clock)
        ids = []
        for _ in range(4):
            competition = await make_competition()
            created = await machine.create_entry(uuid4(), competition.id, now=clock.now())
            ids.append(created.value.id)

        clock.advance(minutes=30)

        async def sweep():
            async with session_factory() as session:
                return await EntryStateMachine(session, clock=clock).sweep_expired_entries(clock.now())

        first, second = await asyncio.gather(sweep(), sweep())

        assert sorted(first + second) == sorted(ids)
        assert not set(first) & set(second)


# ==========================================================================
# Play Again
# ==========================================================================

class TestPlayAgain:
    """Tests for play_again."""

    async def test_after_miss_once_cooldown_passes(
        self, db_session, clock, competition, player_id
    ):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id
        await machine.report_outcome(entry_id, "miss", clock.now())

        blocked = await machine.play_again(entry_id, clock.now())
        assert blocked.reason == Reason.COOLDOWN_ACTIVE
        assert blocked.retry_at == clock.now() + timedelta(hours=12)

        clock.advance(hours=12)
        result = await machine.play_again(entry_id, clock.now(), player_id=player_id)

        assert result.ok
        assert result.value.id != entry_id
        assert result.value.player_id == player_id
        assert result.value.entry_path == EntryPath.INSTANT

    async def test_after_auto_miss(self, db_session, clock, competition, player_id):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id

        clock.advance(hours=13)
        await machine.sweep_expired_entries(clock.now())

        assert (await machine.play_again(entry_id, clock.now())).ok

    async def test_not_after_win_or_unresolved(self, db_session, clock, make_competition, player_id):
        machine = EntryStateMachine(db_session, clock=clock)
        first = await make_competition()
        second = await make_competition()

        won = (await machine.create_entry(player_id, first.id, now=clock.now())).value.id
        await machine.report_outcome(won, "win", clock.now())
        unresolved = (await machine.create_entry(player_id, second.id, now=clock.now())).value.id

        for entry_id in (won, unresolved):
            result = await machine.play_again(entry_id, clock.now())
            assert result.kind == ResultKind.PRECONDITION_FAILED
            assert result.reason == Reason.PLAY_AGAIN_NOT_ALLOWED

    async def test_after_rejected_claim(self, db_session, clock, competition, player_id):
        """A rejected win counts as a miss for play-again."""
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id
        await machine.report_outcome(entry_id, "win", clock.now())

        workflow = VerificationWorkflow(db_session, clock=clock)
        verification_id = (await workflow.get_for_entry(entry_id)).value.id
        assert (await workflow.decide(verification_id, "rejected", uuid4(), clock.now())).ok

        clock.advance(hours=12)
        assert (await machine.play_again(entry_id, clock.now())).ok

    async def test_other_player_cannot_play_again(
        self, db_session, clock, competition, player_id
    ):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(player_id, competition.id, now=clock.now())).value.id
        await machine.report_outcome(entry_id, "miss", clock.now())

        result = await machine.play_again(entry_id, clock.now(), player_id=uuid4())
        assert result.reason == Reason.NOT_OWNER

    async def test_staff_code_entry_replays_as_instant(
        self, db_session, clock, competition, player_id
    ):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(
            player_id, competition.id, entry_path=EntryPath.STAFF_CODE, now=clock.now()
        )).value.id
        await machine.report_outcome(entry_id, "miss", clock.now())

        clock.advance(hours=12)
        result = await machine.play_again(entry_id, clock.now())

        assert result.ok
        assert result.value.entry_path == EntryPath.INSTANT

    async def test_paid_competition_replay_waits_for_payment(
        self, db_session, clock, paid_competition, player_id
    ):
        machine = EntryStateMachine(db_session, clock=clock)
        entry_id = (await machine.create_entry(
            player_id, paid_competition.id, payment=STRIPE_PAYMENT, now=clock.now()
        )).value.id
        await machine.report_outcome(entry_id, "miss", clock.now())

        clock.advance(hours=12)
        result = await machine.play_again(entry_id, clock.now())

        assert result.ok
        assert result.value.status == EntryStatus.PENDING
        assert result.value.paid is False
