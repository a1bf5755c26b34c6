"""
Witness Confirmation
====================

Single-use, expiring tokens sent to a third party who saw the shot.

A resend adds a new row and stamps ``superseded_at`` on earlier
unconfirmed rows. Superseded tokens stay confirmable until they expire;
only the latest is shown to the player.
"""

import secrets
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from holeinone.core.config import settings
from holeinone.core.engine import results
from holeinone.core.engine.clock import Clock, SystemClock, as_utc, has_passed
from holeinone.core.engine.notifications import NotificationClient
from holeinone.core.engine.results import EngineResult, Reason
from holeinone.core.engine.verification import WitnessInfo, merge_witnesses
from holeinone.core.models import (
    OPEN_VERIFICATION_STATUSES,
    Verification,
    WitnessConfirmation,
)

logger = structlog.get_logger()


def generate_token() -> str:
    return secrets.token_urlsafe(32)


class WitnessService:
    """Issue, resend and confirm witness attestations."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationClient] = None,
        ttl: Optional[timedelta] = None,
        base_url: Optional[str] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.ttl = ttl if ttl is not None else timedelta(hours=settings.WITNESS_TOKEN_TTL_HOURS)
        self.base_url = (base_url or settings.APP_BASE_URL).rstrip("/")

    def _now(self, now: Optional[datetime]) -> datetime:
        return as_utc(now) if now is not None else self.clock.now()

    def confirm_url(self, token: str) -> str:
        return f"{self.base_url}/witness/confirm?token={token}"

    async def _find_by_token(self, token: str) -> Optional[WitnessConfirmation]:
        result = await self.db.execute(
            select(WitnessConfirmation)
            .where(WitnessConfirmation.token == token)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def latest(self, verification_id: UUID) -> Optional[WitnessConfirmation]:
        """
        Newest request for a verification.

        Requests issued in the same instant are told apart by the
        supersede chain: an unsuperseded row beats a superseded one, and
        an open request beats one that was already confirmed.
        """
        result = await self.db.execute(
            select(WitnessConfirmation)
            .where(WitnessConfirmation.verification_id == verification_id)
            .order_by(
                WitnessConfirmation.superseded_at.is_(None).desc(),
                WitnessConfirmation.created_at.desc(),
                WitnessConfirmation.confirmed_at.is_(None).desc(),
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ==========================================================================
    # Issue / Resend
    # ==========================================================================

    async def issue(
        self,
        verification_id: UUID,
        witness: WitnessInfo,
        now: Optional[datetime] = None,
        resend: bool = False,
    ) -> EngineResult:
        """
        Create a confirmation request and dispatch it after commit.

        The witness is added to the verification's witness list if new.
        """
        now = self._now(now)

        verification = await self.db.get(Verification, verification_id, populate_existing=True)
        if verification is None:
            return results.validation(Reason.VERIFICATION_NOT_FOUND)
        if not witness.is_valid():
            return results.validation(Reason.INVALID_EVIDENCE, detail="witness")

        # Witness list append doubles as the open-claim guard
        guarded = await self.db.execute(
            update(Verification)
            .where(
                Verification.id == verification_id,
                Verification.status.in_(OPEN_VERIFICATION_STATUSES),
                Verification.auto_miss_applied.is_(False),
            )
            .values(witnesses=merge_witnesses(verification.witnesses, [witness]))
            .execution_options(synchronize_session=False)
        )
        if guarded.rowcount == 0:
            await self.db.rollback()
            return results.precondition(Reason.VERIFICATION_CLOSED)

        await self.db.execute(
            update(WitnessConfirmation)
            .where(
                WitnessConfirmation.verification_id == verification_id,
                WitnessConfirmation.confirmed_at.is_(None),
                WitnessConfirmation.superseded_at.is_(None),
            )
            .values(superseded_at=now)
            .execution_options(synchronize_session=False)
        )

        confirmation = WitnessConfirmation(
            id=uuid4(),
            verification_id=verification_id,
            token=generate_token(),
            witness_name=witness.name,
            witness_email=witness.email.lower(),
            witness_phone=witness.phone,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.db.add(confirmation)
        await self.db.commit()

        logger.info(
            "witness_request_issued",
            verification_id=str(verification_id),
            confirmation_id=str(confirmation.id),
            resend=resend,
        )

        notified = None
        if self.notifier is not None:
            notified = await self.notifier.send_witness_request(
                email=confirmation.witness_email,
                witness_name=confirmation.witness_name,
                url=self.confirm_url(confirmation.token),
                expires_at=confirmation.expires_at.isoformat(),
                resend=resend,
            )
        return results.ok(confirmation, notified=notified)

    async def resend(
        self,
        verification_id: UUID,
        now: Optional[datetime] = None,
    ) -> EngineResult:
        """Re-issue the request for the most recent witness."""
        now = self._now(now)

        latest = await self.latest(verification_id)
        if latest is None:
            return results.validation(Reason.NOT_FOUND)
        if latest.confirmed_at is not None:
            return results.precondition(Reason.ALREADY_CONFIRMED, value=latest)

        return await self.issue(
            verification_id,
            WitnessInfo(
                name=latest.witness_name,
                email=latest.witness_email,
                phone=latest.witness_phone,
            ),
            now=now,
            resend=True,
        )

    # ==========================================================================
    # Confirm
    # ==========================================================================

    async def confirm(
        self,
        token: str,
        now: Optional[datetime] = None,
        meta: Optional[dict] = None,
    ) -> EngineResult:
        """
        Record the witness's attestation.

        Distinguishes not_found, expired and already_confirmed so the
        witness page can say which.
        """
        now = self._now(now)

        confirmation = await self._find_by_token(token)
        if confirmation is None:
            return results.validation(Reason.NOT_FOUND)
        if confirmation.confirmed_at is not None:
            return results.precondition(Reason.ALREADY_CONFIRMED, value=confirmation)
        if has_passed(confirmation.expires_at, now):
            return results.precondition(Reason.EXPIRED, value=confirmation)

        result = await self.db.execute(
            update(WitnessConfirmation)
            .where(
                WitnessConfirmation.id == confirmation.id,
                WitnessConfirmation.confirmed_at.is_(None),
                WitnessConfirmation.expires_at >= now,
            )
            .values(confirmed_at=now, meta=meta or {})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            confirmation = await self._find_by_token(token)
            if confirmation.confirmed_at is not None:
                logger.info("witness_confirm_race_lost", confirmation_id=str(confirmation.id))
                return results.race_lost(Reason.ALREADY_CONFIRMED, confirmation)
            return results.precondition(Reason.EXPIRED, value=confirmation)

        await self.db.execute(
            update(Verification)
            .where(
                Verification.id == confirmation.verification_id,
                Verification.witness_confirmed_at.is_(None),
            )
            .values(witness_confirmed_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(
            "witness_confirmed",
            confirmation_id=str(confirmation.id),
            verification_id=str(confirmation.verification_id),
        )
        return results.ok(await self._find_by_token(token))
