"""
Staff Code Redemption
=====================

Venue-issued codes checked against an entry. Every attempt, successful
or not, appends a StaffCodeAttempt row; those rows also drive the
brute-force limit.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from holeinone.core.config import settings
from holeinone.core.engine import results
from holeinone.core.engine.clock import Clock, SystemClock, as_utc, has_passed
from holeinone.core.engine.entries import EntryStateMachine, PaymentFact
from holeinone.core.engine.results import EngineResult, Reason
from holeinone.core.models import (
    Competition,
    Entry,
    EntryPath,
    EntryStatus,
    StaffCode,
    StaffCodeAttempt,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class StaffCodeRedemption:
    code: StaffCode
    attempt: StaffCodeAttempt
    entry: Entry


STAFF_CODE_PROVIDER = "staff_code"


def normalise_code_part(part: str) -> str:
    return part.strip().upper()


class StaffCodeService:
    """Redeem staff codes with an append-only audit trail."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Optional[Clock] = None,
        max_failed_attempts: Optional[int] = None,
        attempt_window: Optional[timedelta] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.max_failed_attempts = max_failed_attempts or settings.STAFF_CODE_MAX_FAILED_ATTEMPTS
        self.attempt_window = attempt_window or timedelta(
            minutes=settings.STAFF_CODE_ATTEMPT_WINDOW_MINUTES
        )

    def _now(self, now: Optional[datetime]) -> datetime:
        return as_utc(now) if now is not None else self.clock.now()

    async def recent_failures(
        self,
        entry_id: Optional[UUID],
        ip_address: Optional[str],
        now: datetime,
    ) -> int:
        """Failed attempts for this entry or IP inside the attempt window."""
        scopes = []
        if entry_id is not None:
            scopes.append(StaffCodeAttempt.entry_id == entry_id)
        if ip_address:
            scopes.append(StaffCodeAttempt.ip_address == ip_address)
        if not scopes:
            return 0

        count = await self.db.scalar(
            select(func.count())
            .select_from(StaffCodeAttempt)
            .where(
                StaffCodeAttempt.success.is_(False),
                StaffCodeAttempt.attempted_at >= now - self.attempt_window,
                or_(*scopes),
            )
        )
        return count or 0

    async def redeem(
        self,
        prefix: str,
        suffix: str,
        entry_id: UUID,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
    ) -> EngineResult:
        """
        Redeem ``prefix-suffix`` for an entry.

        Checks, in order: rate limit, entry, code existence, active flag,
        validity interval, remaining uses. The use counter only moves
        through a conditional increment.

        A pending, unpaid entry is settled by the redemption: it moves to
        the staff-code path and its window opens, in the same transaction
        as the increment.
        """
        now = self._now(now)
        prefix = normalise_code_part(prefix)
        suffix = normalise_code_part(suffix)

        async def fail(result: EngineResult, code_id: Optional[UUID] = None) -> EngineResult:
            await self._record(
                code_entered=f"{prefix}-{suffix}",
                staff_code_id=code_id,
                entry_id=entry_id,
                success=False,
                reason=result.reason,
                ip_address=ip_address,
                now=now,
            )
            await self.db.commit()
            logger.info(
                "staff_code_rejected",
                entry_id=str(entry_id),
                reason=result.reason.value,
                ip_address=ip_address,
            )
            return result

        if await self.recent_failures(entry_id, ip_address, now) >= self.max_failed_attempts:
            return await fail(results.precondition(Reason.RATE_LIMITED))

        entry = await self.db.get(Entry, entry_id, populate_existing=True)
        if entry is None:
            return await fail(results.validation(Reason.ENTRY_NOT_FOUND))
        competition_id = entry.competition_id
        settles_entry = entry.status == EntryStatus.PENDING and not entry.paid

        code = await self.db.scalar(
            select(StaffCode)
            .where(StaffCode.code_prefix == prefix, StaffCode.code_suffix == suffix)
            .execution_options(populate_existing=True)
        )
        if code is None:
            return await fail(results.validation(Reason.CODE_NOT_FOUND))
        code_id = code.id
        if not code.active:
            return await fail(results.precondition(Reason.CODE_INACTIVE), code_id)
        if code.valid_from is not None and as_utc(code.valid_from) > now:
            return await fail(results.precondition(Reason.CODE_NOT_YET_VALID), code_id)
        if has_passed(code.valid_until, now):
            return await fail(results.precondition(Reason.CODE_EXPIRED), code_id)
        if code.max_uses is not None and code.current_uses >= code.max_uses:
            return await fail(results.precondition(Reason.CODE_EXHAUSTED), code_id)

        incremented = await self.db.execute(
            update(StaffCode)
            .where(
                StaffCode.id == code_id,
                StaffCode.active.is_(True),
                or_(StaffCode.max_uses.is_(None), StaffCode.current_uses < StaffCode.max_uses),
            )
            .values(current_uses=StaffCode.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        if incremented.rowcount == 0:
            return await fail(results.precondition(Reason.CODE_EXHAUSTED), code_id)

        if settles_entry:
            settled = await self._settle_entry(entry_id, competition_id, now)
            if not settled.ok:
                # Undo the increment; the failed attempt is still recorded.
                await self.db.rollback()
                return await fail(
                    results.precondition(settled.reason, retry_at=settled.retry_at),
                    code_id,
                )

        attempt = await self._record(
            code_entered=f"{prefix}-{suffix}",
            staff_code_id=code_id,
            entry_id=entry_id,
            success=True,
            reason=None,
            ip_address=ip_address,
            now=now,
        )
        await self.db.commit()

        code = await self.db.get(StaffCode, code_id, populate_existing=True)
        entry = await self.db.get(Entry, entry_id, populate_existing=True)
        logger.info(
            "staff_code_redeemed",
            entry_id=str(entry_id),
            staff_code_id=str(code.id),
            current_uses=code.current_uses,
            settled_entry=settles_entry,
        )
        return results.ok(StaffCodeRedemption(code=code, attempt=attempt, entry=entry))

    async def _record(
        self,
        code_entered: str,
        staff_code_id: Optional[UUID],
        entry_id: Optional[UUID],
        success: bool,
        reason: Optional[Reason],
        ip_address: Optional[str],
        now: datetime,
    ) -> StaffCodeAttempt:
        attempt = StaffCodeAttempt(
            id=uuid4(),
            staff_code_id=staff_code_id,
            entry_id=entry_id,
            code_entered=code_entered[:50],
            success=success,
            reason=reason.value if reason is not None else None,
            ip_address=ip_address,
            attempted_at=now,
        )
        self.db.add(attempt)
        await self.db.flush()
        return attempt

    async def _settle_entry(self, entry_id: UUID, competition_id: UUID, now: datetime) -> EngineResult:
        """Count the redemption as the fee paid at the venue, without committing."""
        competition = await self.db.get(Competition, competition_id)
        payment = PaymentFact(
            paid=True,
            amount_minor=competition.entry_fee,
            payment_date=now,
            payment_provider=STAFF_CODE_PROVIDER,
        )
        return await EntryStateMachine(self.db, clock=self.clock).confirm_payment(
            entry_id,
            payment,
            now,
            entry_path=EntryPath.STAFF_CODE,
            commit=False,
        )
