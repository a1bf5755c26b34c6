"""
Entry State Machine
===================

Owns the lifecycle of a single Entry:

    created -> pending (fee owed) | active (free) | paid (fee settled)
            -> completed (win/miss self-reported) | expired (auto-miss)

Every transition is a conditional write on its guard column. A writer
that matches zero rows lost a race and gets RACE_LOST with the winning
state, never an exception.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union
from uuid import UUID, uuid4

import structlog
from sqlalchemy import insert, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from holeinone.core.config import settings
from holeinone.core.database import advisory_xact_lock
from holeinone.core.engine import results
from holeinone.core.engine.clock import Clock, SystemClock, as_utc, has_passed
from holeinone.core.engine.cooldown import CooldownEnforcer, recent_paid_entry_exists
from holeinone.core.engine.results import EngineResult, Reason
from holeinone.core.engine.verification import create_verification_if_absent
from holeinone.core.models import (
    Competition,
    CompetitionStatus,
    Entry,
    EntryOutcome,
    EntryPath,
    EntryStatus,
)

logger = structlog.get_logger()


REPORTABLE_OUTCOMES = (EntryOutcome.WIN, EntryOutcome.MISS)
PLAY_AGAIN_OUTCOMES = (EntryOutcome.MISS, EntryOutcome.AUTO_MISS)


@dataclass(frozen=True)
class PaymentFact:
    """Payment confirmation supplied by the payment collaborator."""
    paid: bool
    amount_minor: Optional[int] = None
    payment_date: Optional[datetime] = None
    payment_provider: Optional[str] = None


def competition_accepts_entries(competition: Competition, now: datetime) -> bool:
    if competition.status != CompetitionStatus.ACTIVE:
        return False
    return not has_passed(competition.end_date, now)


def payment_covers_fee(payment: PaymentFact, competition: Competition) -> bool:
    """A payment fact counts only when it is confirmed for at least the entry fee."""
    if not payment.paid:
        return False
    return (payment.amount_minor or 0) >= competition.entry_fee


class EntryStateMachine:
    """
    Entry lifecycle transitions.

    Each public method commits its own transaction unless told otherwise,
    so callers composing several steps (magic-link consumption) can keep
    them atomic.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Optional[Clock] = None,
        cooldown: Optional[timedelta] = None,
        window_minutes: Optional[dict[str, int]] = None,
        verification_timeout: Optional[timedelta] = None,
        terms_version: Optional[str] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.cooldown = cooldown if cooldown is not None else settings.entry_cooldown
        self.window_minutes = window_minutes or settings.window_minutes_by_path
        self.verification_timeout = (
            verification_timeout
            if verification_timeout is not None
            else settings.verification_timeout
        )
        self.terms_version = terms_version or settings.TERMS_VERSION
        self.cooldown_enforcer = CooldownEnforcer(db, clock=self.clock, cooldown=self.cooldown)

    def _now(self, now: Optional[datetime]) -> datetime:
        return as_utc(now) if now is not None else self.clock.now()

    async def _load(self, entry_id: UUID) -> Optional[Entry]:
        return await self.db.get(Entry, entry_id, populate_existing=True)

    # ==========================================================================
    # Creation
    # ==========================================================================

    async def create_entry(
        self,
        player_id: UUID,
        competition_id: UUID,
        entry_path: EntryPath = EntryPath.INSTANT,
        payment: Optional[PaymentFact] = None,
        terms_version: Optional[str] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> EngineResult:
        """
        Create a new entry for a player.

        Free competitions open the window immediately. Paid competitions
        open it only when a confirmed payment fact covering the fee is
        supplied; without one the entry waits in ``pending``.
        """
        now = self._now(now)
        terms_version = terms_version or self.terms_version

        competition = await self.db.get(Competition, competition_id)
        if competition is None:
            return results.validation(Reason.COMPETITION_NOT_FOUND)
        if not competition_accepts_entries(competition, now):
            return results.precondition(Reason.COMPETITION_INACTIVE)

        if payment is not None and not payment_covers_fee(payment, competition):
            return results.precondition(Reason.PAYMENT_NOT_CONFIRMED)

        decision = await self.cooldown_enforcer.can_enter(player_id, competition_id, now)
        if not decision.allowed:
            return results.precondition(Reason.COOLDOWN_ACTIVE, retry_at=decision.retry_at)

        window_minutes = self.window_minutes[entry_path.value]
        values = {
            "id": uuid4(),
            "competition_id": competition_id,
            "player_id": player_id,
            "entry_path": entry_path,
            "window_minutes": window_minutes,
            "entry_date": now,
            "paid": False,
            "amount_minor": None,
            "payment_date": None,
            "payment_provider": None,
            "status": EntryStatus.PENDING,
            "attempt_window_start": None,
            "attempt_window_end": None,
            "terms_accepted_at": now if terms_version else None,
            "terms_version": terms_version,
        }

        if competition.entry_fee == 0:
            values.update(paid=True, amount_minor=0, status=EntryStatus.ACTIVE)
        elif payment is not None:
            values.update(
                paid=True,
                amount_minor=payment.amount_minor,
                payment_date=as_utc(payment.payment_date) or now,
                payment_provider=payment.payment_provider,
                status=EntryStatus.PAID,
            )

        if values["paid"]:
            values.update(
                attempt_window_start=now,
                attempt_window_end=now + timedelta(minutes=window_minutes),
            )

        await advisory_xact_lock(self.db, "entry", player_id, competition_id)

        table = Entry.__table__
        names = list(values)
        guarded = select(
            *[literal(values[name], type_=table.c[name].type) for name in names]
        ).where(~recent_paid_entry_exists(player_id, competition_id, now, self.cooldown))
        result = await self.db.execute(insert(table).from_select(names, guarded))

        if result.rowcount == 0:
            await self.db.rollback()
            decision = await self.cooldown_enforcer.can_enter(player_id, competition_id, now)
            logger.info(
                "entry_create_race_lost",
                player_id=str(player_id),
                competition_id=str(competition_id),
            )
            return results.precondition(Reason.COOLDOWN_ACTIVE, retry_at=decision.retry_at)

        if commit:
            await self.db.commit()

        entry = await self._load(values["id"])
        logger.info(
            "entry_created",
            entry_id=str(entry.id),
            player_id=str(player_id),
            competition_id=str(competition_id),
            entry_path=entry_path.value,
            status=entry.status.value,
        )
        return results.ok(entry)

    # ==========================================================================
    # Payment
    # ==========================================================================

    async def confirm_payment(
        self,
        entry_id: UUID,
        payment: PaymentFact,
        now: Optional[datetime] = None,
        entry_path: Optional[EntryPath] = None,
        commit: bool = True,
    ) -> EngineResult:
        """
        Settle a pending entry and open its attempt window.

        ``entry_path`` switches the entry to another path (and its window
        length) as part of the same write; staff-code redemption settles
        entries this way.
        """
        now = self._now(now)

        if not payment.paid:
            return results.precondition(Reason.PAYMENT_NOT_CONFIRMED)

        entry = await self._load(entry_id)
        if entry is None:
            return results.validation(Reason.ENTRY_NOT_FOUND)
        if entry.paid:
            return results.race_lost(Reason.ALREADY_PAID, entry)

        competition = await self.db.get(Competition, entry.competition_id)
        if competition is None or not competition_accepts_entries(competition, now):
            return results.precondition(Reason.COMPETITION_INACTIVE)
        if not payment_covers_fee(payment, competition):
            return results.precondition(Reason.PAYMENT_NOT_CONFIRMED)

        path_values = {}
        window_minutes = entry.window_minutes
        if entry_path is not None:
            window_minutes = self.window_minutes[entry_path.value]
            path_values = {"entry_path": entry_path, "window_minutes": window_minutes}

        await advisory_xact_lock(self.db, "entry", entry.player_id, entry.competition_id)

        result = await self.db.execute(
            update(Entry)
            .where(
                Entry.id == entry_id,
                Entry.status == EntryStatus.PENDING,
                Entry.paid.is_(False),
                ~recent_paid_entry_exists(
                    entry.player_id,
                    entry.competition_id,
                    now,
                    self.cooldown,
                    exclude_entry_id=entry_id,
                ),
            )
            .values(
                paid=True,
                amount_minor=payment.amount_minor,
                payment_date=as_utc(payment.payment_date) or now,
                payment_provider=payment.payment_provider,
                status=EntryStatus.PAID,
                entry_date=now,
                attempt_window_start=now,
                attempt_window_end=now + timedelta(minutes=window_minutes),
                **path_values,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            await self.db.rollback()
            entry = await self._load(entry_id)
            if entry.paid:
                return results.race_lost(Reason.ALREADY_PAID, entry)
            decision = await self.cooldown_enforcer.can_enter(
                entry.player_id, entry.competition_id, now
            )
            return results.precondition(Reason.COOLDOWN_ACTIVE, retry_at=decision.retry_at)

        if commit:
            await self.db.commit()
        entry = await self._load(entry_id)
        logger.info(
            "entry_payment_confirmed",
            entry_id=str(entry_id),
            entry_path=entry.entry_path.value,
            amount_minor=entry.amount_minor,
        )
        return results.ok(entry)

    # ==========================================================================
    # Outcome
    # ==========================================================================

    async def report_outcome(
        self,
        entry_id: UUID,
        outcome: Union[EntryOutcome, str],
        now: Optional[datetime] = None,
        player_id: Optional[UUID] = None,
    ) -> EngineResult:
        """
        Record the player's self-reported outcome.

        Only ``win`` and ``miss`` are reportable. A win also opens the
        verification record in the same transaction.
        """
        now = self._now(now)

        try:
            outcome = EntryOutcome(outcome)
        except ValueError:
            return results.validation(Reason.INVALID_OUTCOME)
        if outcome not in REPORTABLE_OUTCOMES:
            return results.validation(Reason.INVALID_OUTCOME)

        entry = await self._load(entry_id)
        if entry is None:
            return results.validation(Reason.ENTRY_NOT_FOUND)
        if player_id is not None and entry.player_id != player_id:
            return results.validation(Reason.NOT_OWNER)
        if entry.outcome_self is not None:
            return results.race_lost(Reason.ALREADY_REPORTED, entry)
        if entry.attempt_window_end is None:
            return results.precondition(Reason.WINDOW_NOT_OPEN)
        if has_passed(entry.attempt_window_end, now):
            entry = await self._discover_auto_miss(entry, now)
            return results.precondition(Reason.WINDOW_CLOSED, value=entry)

        result = await self.db.execute(
            update(Entry)
            .where(
                Entry.id == entry_id,
                Entry.outcome_self.is_(None),
                Entry.attempt_window_end >= now,
            )
            .values(
                outcome_self=outcome,
                outcome_reported_at=now,
                completed_at=now,
                status=EntryStatus.COMPLETED,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            await self.db.rollback()
            entry = await self._load(entry_id)
            if entry.outcome_self is not None:
                logger.info(
                    "outcome_race_lost",
                    entry_id=str(entry_id),
                    attempted=outcome.value,
                    current=entry.outcome_self.value,
                )
                return results.race_lost(Reason.ALREADY_REPORTED, entry)
            return results.precondition(Reason.WINDOW_CLOSED, value=entry)

        if outcome == EntryOutcome.WIN:
            await create_verification_if_absent(
                self.db,
                entry_id,
                auto_miss_at=now + self.verification_timeout,
            )

        await self.db.commit()
        entry = await self._load(entry_id)
        logger.info("outcome_reported", entry_id=str(entry_id), outcome=outcome.value)
        return results.ok(entry)

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def get_entry(self, entry_id: UUID, now: Optional[datetime] = None) -> EngineResult:
        """Fetch an entry, auto-missing it first if its window lapsed unreported."""
        now = self._now(now)
        entry = await self._load(entry_id)
        if entry is None:
            return results.validation(Reason.ENTRY_NOT_FOUND)
        if entry.outcome_self is None and has_passed(entry.attempt_window_end, now):
            entry = await self._discover_auto_miss(entry, now)
        return results.ok(entry)

    async def _discover_auto_miss(self, entry: Entry, now: datetime) -> Entry:
        entry_id = entry.id
        applied = await self._apply_auto_miss(entry_id, now)
        if applied:
            await self.db.commit()
            logger.info("entry_auto_missed", entry_id=str(entry_id), trigger="read")
        else:
            await self.db.rollback()
        return await self._load(entry_id)

    async def _apply_auto_miss(self, entry_id: UUID, now: datetime) -> bool:
        result = await self.db.execute(
            update(Entry)
            .where(
                Entry.id == entry_id,
                Entry.outcome_self.is_(None),
                Entry.attempt_window_end < now,
            )
            .values(
                outcome_self=EntryOutcome.AUTO_MISS,
                outcome_reported_at=now,
                completed_at=now,
                status=EntryStatus.EXPIRED,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ==========================================================================
    # Sweep
    # ==========================================================================

    async def sweep_expired_entries(
        self,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> list[UUID]:
        """
        Auto-miss every entry whose window lapsed without a report.

        Safe to run concurrently with itself and with live reports.
        Returns the ids this call actually changed.
        """
        now = self._now(now)
        batch_size = batch_size or settings.SWEEP_BATCH_SIZE

        candidates = await self.db.execute(
            select(Entry.id)
            .where(
                Entry.outcome_self.is_(None),
                Entry.attempt_window_end < now,
            )
            .order_by(Entry.attempt_window_end)
            .limit(batch_size)
        )
        candidate_ids = list(candidates.scalars().all())

        changed: list[UUID] = []
        for entry_id in candidate_ids:
            if await self._apply_auto_miss(entry_id, now):
                changed.append(entry_id)

        await self.db.commit()

        if candidate_ids:
            logger.info(
                "entry_sweep_completed",
                candidates=len(candidate_ids),
                auto_missed=len(changed),
            )
        return changed

    # ==========================================================================
    # Play Again
    # ==========================================================================

    async def play_again(
        self,
        previous_entry_id: UUID,
        now: Optional[datetime] = None,
        player_id: Optional[UUID] = None,
    ) -> EngineResult:
        """
        Start a fresh entry after a missed attempt, through normal creation.

        A fee-bearing competition gives a pending entry that waits for its
        own payment fact.
        """
        now = self._now(now)

        previous = await self._load(previous_entry_id)
        if previous is None:
            return results.validation(Reason.ENTRY_NOT_FOUND)
        if player_id is not None and previous.player_id != player_id:
            return results.validation(Reason.NOT_OWNER)
        if previous.effective_outcome not in PLAY_AGAIN_OUTCOMES:
            return results.precondition(Reason.PLAY_AGAIN_NOT_ALLOWED)

        # The staff-code path is only granted by a redemption on the new entry.
        entry_path = previous.entry_path
        if entry_path == EntryPath.STAFF_CODE:
            entry_path = EntryPath.INSTANT

        return await self.create_entry(
            player_id=previous.player_id,
            competition_id=previous.competition_id,
            entry_path=entry_path,
            terms_version=previous.terms_version,
            now=now,
        )
