"""
Verification Workflow
=====================

Evidence review for a win claim, 1:1 with its Entry.

    pending -> under_review -> verified | rejected
       \\___________________/
                |  auto_miss_at passes untouched
                v
        auto_miss_applied = true (Entry disposition -> auto_miss)

verified/rejected are terminal. auto_miss_applied flips false -> true
once, and closes the record to every later write.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Union
from urllib.parse import urlparse
from uuid import UUID, uuid4

import structlog
from email_validator import EmailNotValidError, validate_email
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from holeinone.core.config import settings
from holeinone.core.database import insert_ignoring_conflicts
from holeinone.core.engine import results
from holeinone.core.engine.clock import Clock, SystemClock, as_utc
from holeinone.core.engine.notifications import NotificationClient
from holeinone.core.engine.results import EngineResult, Reason
from holeinone.core.models import (
    OPEN_VERIFICATION_STATUSES,
    Entry,
    EntryOutcome,
    EntryStatus,
    Verification,
    VerificationStatus,
)

logger = structlog.get_logger()


DECISIONS = (VerificationStatus.VERIFIED, VerificationStatus.REJECTED)

EVIDENCE_URL_FIELDS = ("selfie_url", "id_document_url", "handicap_proof_url", "video_url")


@dataclass(frozen=True)
class WitnessInfo:
    name: str
    email: str
    phone: Optional[str] = None

    def as_dict(self) -> dict:
        return {"name": self.name, "email": self.email, "phone": self.phone}

    def is_valid(self) -> bool:
        if not self.name.strip():
            return False
        try:
            validate_email(self.email, check_deliverability=False)
        except EmailNotValidError:
            return False
        return True


@dataclass(frozen=True)
class EvidenceSubmission:
    """URLs returned by the storage collaborator plus witness details."""
    selfie_url: Optional[str] = None
    id_document_url: Optional[str] = None
    handicap_proof_url: Optional[str] = None
    video_url: Optional[str] = None
    witnesses: list[WitnessInfo] = field(default_factory=list)
    social_consent: Optional[bool] = None


@dataclass(frozen=True)
class AutoMissStatus:
    pending: int
    overdue: int
    next_deadline: Optional[datetime]


def is_valid_evidence_url(url: str, entry_id: UUID) -> bool:
    """Accept absolute http(s) URLs or storage paths under this entry's folder."""
    if url.startswith(f"verifications/{entry_id}/"):
        return len(url) > len(f"verifications/{entry_id}/")
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


async def create_verification_if_absent(
    db: AsyncSession,
    entry_id: UUID,
    auto_miss_at: datetime,
) -> bool:
    """
    Insert the verification row for an entry unless one already exists.

    Runs inside the caller's transaction. Returns True if this call
    created the row.
    """
    stmt = insert_ignoring_conflicts(
        db,
        Verification.__table__,
        index_elements=["entry_id"],
        values={
            "id": uuid4(),
            "entry_id": entry_id,
            "status": VerificationStatus.PENDING,
            "auto_miss_at": auto_miss_at,
            "auto_miss_applied": False,
            "witnesses": [],
            "social_consent": False,
        },
    )
    result = await db.execute(stmt)
    created = result.rowcount == 1
    if created:
        logger.info("verification_created", entry_id=str(entry_id), auto_miss_at=auto_miss_at.isoformat())
    return created


def _open_guard():
    """Conditions under which a verification still accepts writes."""
    return (
        Verification.status.in_(OPEN_VERIFICATION_STATUSES),
        Verification.auto_miss_applied.is_(False),
    )


class VerificationWorkflow:
    """Evidence intake, staff review and timeout handling for win claims."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationClient] = None,
        timeout: Optional[timedelta] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.timeout = timeout if timeout is not None else settings.verification_timeout

    def _now(self, now: Optional[datetime]) -> datetime:
        return as_utc(now) if now is not None else self.clock.now()

    async def _load(self, verification_id: UUID) -> Optional[Verification]:
        return await self.db.get(Verification, verification_id, populate_existing=True)

    async def _load_for_entry(self, entry_id: UUID) -> Optional[Verification]:
        result = await self.db.execute(
            select(Verification)
            .where(Verification.entry_id == entry_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_verification(self, verification_id: UUID) -> EngineResult:
        verification = await self._load(verification_id)
        if verification is None:
            return results.validation(Reason.VERIFICATION_NOT_FOUND)
        return results.ok(verification)

    async def get_for_entry(self, entry_id: UUID) -> EngineResult:
        verification = await self._load_for_entry(entry_id)
        if verification is None:
            return results.validation(Reason.VERIFICATION_NOT_FOUND)
        return results.ok(verification)

    async def list_open(self, limit: int = 50) -> list[Verification]:
        """Open claims ordered by deadline, for the staff review queue."""
        result = await self.db.execute(
            select(Verification)
            .where(
                Verification.status.in_(OPEN_VERIFICATION_STATUSES),
                Verification.auto_miss_applied.is_(False),
            )
            .order_by(Verification.auto_miss_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ==========================================================================
    # Ensure
    # ==========================================================================

    async def ensure_verification(
        self,
        entry_id: UUID,
        now: Optional[datetime] = None,
    ) -> EngineResult:
        """
        Find-or-create the verification for a win claim.

        Any number of concurrent callers end up with the same single row.
        """
        now = self._now(now)

        entry = await self.db.get(Entry, entry_id, populate_existing=True)
        if entry is None:
            return results.validation(Reason.ENTRY_NOT_FOUND)
        if entry.outcome_self != EntryOutcome.WIN:
            return results.precondition(Reason.NOT_A_WIN_CLAIM)

        reported_at = as_utc(entry.outcome_reported_at) or now
        await create_verification_if_absent(self.db, entry_id, reported_at + self.timeout)
        await self.db.commit()

        return results.ok(await self._load_for_entry(entry_id))

    # ==========================================================================
    # Evidence
    # ==========================================================================

    async def submit_evidence(
        self,
        entry_id: UUID,
        evidence: EvidenceSubmission,
        now: Optional[datetime] = None,
        player_id: Optional[UUID] = None,
    ) -> EngineResult:
        """
        Attach evidence URLs and witness details to an open claim.

        Leaves ``status`` alone; stamps ``evidence_captured_at``.
        """
        now = self._now(now)

        entry = await self.db.get(Entry, entry_id, populate_existing=True)
        if entry is None:
            return results.validation(Reason.ENTRY_NOT_FOUND)
        if player_id is not None and entry.player_id != player_id:
            return results.validation(Reason.NOT_OWNER)
        if entry.outcome_self != EntryOutcome.WIN:
            return results.precondition(Reason.NOT_A_WIN_CLAIM)

        for name in EVIDENCE_URL_FIELDS:
            url = getattr(evidence, name)
            if url is not None and not is_valid_evidence_url(url, entry_id):
                return results.validation(Reason.INVALID_EVIDENCE, detail=name)
        for witness in evidence.witnesses:
            if not witness.is_valid():
                return results.validation(Reason.INVALID_EVIDENCE, detail="witnesses")

        verification = await self._load_for_entry(entry_id)
        if verification is None:
            reported_at = as_utc(entry.outcome_reported_at) or now
            await create_verification_if_absent(self.db, entry_id, reported_at + self.timeout)
            verification = await self._load_for_entry(entry_id)

        values = {
            name: getattr(evidence, name)
            for name in EVIDENCE_URL_FIELDS
            if getattr(evidence, name) is not None
        }
        if evidence.witnesses:
            values["witnesses"] = merge_witnesses(verification.witnesses, evidence.witnesses)
        if evidence.social_consent is not None:
            values["social_consent"] = evidence.social_consent
        values["evidence_captured_at"] = now

        verification_id = verification.id
        result = await self.db.execute(
            update(Verification)
            .where(
                Verification.id == verification_id,
                *_open_guard(),
                or_(Verification.auto_miss_at.is_(None), Verification.auto_miss_at >= now),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            return results.precondition(
                Reason.VERIFICATION_CLOSED,
                value=await self._load(verification_id),
            )

        await self.db.commit()
        logger.info(
            "evidence_submitted",
            entry_id=str(entry_id),
            fields=sorted(values),
        )
        return results.ok(await self._load(verification_id))

    # ==========================================================================
    # Staff Review
    # ==========================================================================

    async def claim_for_review(
        self,
        verification_id: UUID,
        staff_id: UUID,
        now: Optional[datetime] = None,
    ) -> EngineResult:
        """Move an open claim to under_review. Last writer wins among staff."""
        now = self._now(now)

        result = await self.db.execute(
            update(Verification)
            .where(Verification.id == verification_id, *_open_guard())
            .values(status=VerificationStatus.UNDER_REVIEW, review_started_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            verification = await self._load(verification_id)
            if verification is None:
                return results.validation(Reason.VERIFICATION_NOT_FOUND)
            return results.precondition(Reason.ALREADY_RESOLVED, value=verification)

        await self.db.commit()
        logger.info("verification_claimed", verification_id=str(verification_id), staff_id=str(staff_id))
        return results.ok(await self._load(verification_id))

    async def decide(
        self,
        verification_id: UUID,
        decision: Union[VerificationStatus, str],
        staff_id: UUID,
        now: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> EngineResult:
        """
        Verify or reject a claim. Terminal; later calls get ALREADY_RESOLVED.

        The player is told about the decision after commit, best effort.
        """
        now = self._now(now)

        try:
            decision = VerificationStatus(decision)
        except ValueError:
            return results.validation(Reason.INVALID_DECISION)
        if decision not in DECISIONS:
            return results.validation(Reason.INVALID_DECISION)

        verification = await self._load(verification_id)
        if verification is None:
            return results.validation(Reason.VERIFICATION_NOT_FOUND)

        result = await self.db.execute(
            update(Verification)
            .where(Verification.id == verification_id, *_open_guard())
            .values(
                status=decision,
                verified_at=now,
                verified_by=staff_id,
                decision_notes=notes,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            logger.info("verification_decide_rejected", verification_id=str(verification_id))
            return results.precondition(
                Reason.ALREADY_RESOLVED,
                value=await self._load(verification_id),
            )

        official = EntryOutcome.WIN if decision == VerificationStatus.VERIFIED else EntryOutcome.MISS
        await self.db.execute(
            update(Entry)
            .where(Entry.id == verification.entry_id)
            .values(outcome_official=official)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        verification = await self._load(verification_id)
        logger.info(
            "verification_decided",
            verification_id=str(verification_id),
            decision=decision.value,
            staff_id=str(staff_id),
        )

        notified = None
        if self.notifier is not None:
            entry = await self.db.get(Entry, verification.entry_id)
            notified = await self.notifier.notify_claim_decision(
                player_id=str(entry.player_id),
                entry_id=str(entry.id),
                decision=decision.value,
                notes=notes,
            )
        return results.ok(verification, notified=notified)

    # ==========================================================================
    # Timeout
    # ==========================================================================

    async def sweep_expired_verifications(
        self,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> list[UUID]:
        """
        Auto-miss open claims whose deadline passed.

        The flag flip and the Entry disposition commit together; the Entry
        is only touched when this call won the flip.
        """
        now = self._now(now)
        batch_size = batch_size or settings.SWEEP_BATCH_SIZE

        candidates = await self.db.execute(
            select(Verification.id, Verification.entry_id)
            .where(
                Verification.status.in_(OPEN_VERIFICATION_STATUSES),
                Verification.auto_miss_applied.is_(False),
                Verification.auto_miss_at < now,
            )
            .order_by(Verification.auto_miss_at)
            .limit(batch_size)
        )
        rows = candidates.all()

        changed: list[UUID] = []
        for verification_id, entry_id in rows:
            flipped = await self.db.execute(
                update(Verification)
                .where(
                    Verification.id == verification_id,
                    Verification.status.in_(OPEN_VERIFICATION_STATUSES),
                    Verification.auto_miss_applied.is_(False),
                    Verification.auto_miss_at < now,
                )
                .values(auto_miss_applied=True)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                continue
            await self.db.execute(
                update(Entry)
                .where(Entry.id == entry_id)
                .values(outcome_official=EntryOutcome.AUTO_MISS, status=EntryStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            changed.append(verification_id)

        await self.db.commit()

        if rows:
            logger.info(
                "verification_sweep_completed",
                candidates=len(rows),
                auto_missed=len(changed),
            )
        return changed

    async def auto_miss_status(self, now: Optional[datetime] = None) -> AutoMissStatus:
        """Pending / overdue counts and the next deadline, for monitoring."""
        now = self._now(now)
        open_claims = (
            Verification.status.in_(OPEN_VERIFICATION_STATUSES),
            Verification.auto_miss_applied.is_(False),
        )

        pending = await self.db.scalar(
            select(func.count()).select_from(Verification).where(*open_claims)
        )
        overdue = await self.db.scalar(
            select(func.count())
            .select_from(Verification)
            .where(*open_claims, Verification.auto_miss_at < now)
        )
        next_deadline = await self.db.scalar(
            select(func.min(Verification.auto_miss_at))
            .where(*open_claims, Verification.auto_miss_at >= now)
        )
        return AutoMissStatus(
            pending=pending or 0,
            overdue=overdue or 0,
            next_deadline=as_utc(next_deadline),
        )


def merge_witnesses(existing: Optional[list], incoming: list[WitnessInfo]) -> list[dict]:
    """Append witnesses not already listed (matched by email)."""
    merged = list(existing or [])
    seen = {(w.get("email") or "").lower() for w in merged}
    for witness in incoming:
        if witness.email.lower() not in seen:
            merged.append(witness.as_dict())
            seen.add(witness.email.lower())
    return merged
