"""
Entry-Access Tokens (magic links)
=================================

A magic link binds a prospective entry to an email identity before any
account exists. Consuming it is one transaction:

1. flip ``used`` false -> true (conditional on unused and unexpired)
2. find-or-create the Profile for the email
3. create the Entry through the state machine (path ``magic_link``)

If step 3 fails the whole transaction rolls back and the link stays
usable.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from holeinone.core.config import settings
from holeinone.core.database import insert_ignoring_conflicts
from holeinone.core.engine import results
from holeinone.core.engine.clock import Clock, SystemClock, as_utc, has_passed
from holeinone.core.engine.entries import EntryStateMachine, competition_accepts_entries
from holeinone.core.engine.notifications import NotificationClient
from holeinone.core.engine.results import EngineResult, Reason
from holeinone.core.models import (
    Competition,
    Entry,
    EntryAccessToken,
    EntryPath,
    Profile,
)

logger = structlog.get_logger()


PROFILE_FIELDS = ("first_name", "last_name", "age_years", "handicap", "phone_e164")


@dataclass(frozen=True)
class MagicLinkConsumption:
    token: EntryAccessToken
    profile: Profile
    entry: Entry


def normalise_email(email: str) -> str:
    return email.strip().lower()


class MagicLinkService:
    """Issue and consume single-use entry-access links."""

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
        self.ttl = ttl if ttl is not None else timedelta(hours=settings.MAGIC_LINK_TTL_HOURS)
        self.base_url = (base_url or settings.APP_BASE_URL).rstrip("/")

    def _now(self, now: Optional[datetime]) -> datetime:
        return as_utc(now) if now is not None else self.clock.now()

    def consume_url(self, token: str) -> str:
        return f"{self.base_url}/entry/magic?token={token}"

    async def _find(self, token: str) -> Optional[EntryAccessToken]:
        result = await self.db.execute(
            select(EntryAccessToken)
            .where(EntryAccessToken.token == token)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ==========================================================================
    # Issue
    # ==========================================================================

    async def issue(
        self,
        email: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
        ttl: Optional[timedelta] = None,
    ) -> EngineResult:
        """
        Store a new link for ``email`` and send it after commit.

        ``payload`` carries the player details and ``competition_id``.
        """
        now = self._now(now)
        email = normalise_email(email)

        try:
            competition_id = UUID(str(payload["competition_id"]))
        except (KeyError, ValueError):
            return results.validation(Reason.COMPETITION_NOT_FOUND)

        competition = await self.db.get(Competition, competition_id)
        if competition is None:
            return results.validation(Reason.COMPETITION_NOT_FOUND)
        if not competition_accepts_entries(competition, now):
            return results.precondition(Reason.COMPETITION_INACTIVE)

        access_token = EntryAccessToken(
            id=uuid4(),
            token=secrets.token_urlsafe(32),
            email=email,
            payload={**payload, "competition_id": str(competition_id)},
            expires_at=now + (ttl if ttl is not None else self.ttl),
            used=False,
        )
        self.db.add(access_token)
        await self.db.commit()

        logger.info(
            "magic_link_issued",
            token_id=str(access_token.id),
            competition_id=str(competition_id),
        )

        notified = None
        if self.notifier is not None:
            notified = await self.notifier.send_magic_link(
                email=email,
                url=self.consume_url(access_token.token),
                expires_at=access_token.expires_at.isoformat(),
            )
        return results.ok(access_token, notified=notified)

    # ==========================================================================
    # Consume
    # ==========================================================================

    async def consume(self, token: str, now: Optional[datetime] = None) -> EngineResult:
        now = self._now(now)

        access_token = await self._find(token)
        if access_token is None:
            return results.validation(Reason.NOT_FOUND)
        if access_token.used:
            return results.precondition(Reason.ALREADY_USED)
        if has_passed(access_token.expires_at, now):
            return results.precondition(Reason.EXPIRED)

        flipped = await self.db.execute(
            update(EntryAccessToken)
            .where(
                EntryAccessToken.id == access_token.id,
                EntryAccessToken.used.is_(False),
                EntryAccessToken.expires_at >= now,
            )
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount == 0:
            await self.db.rollback()
            access_token = await self._find(token)
            logger.info("magic_link_consume_race_lost", token_id=str(access_token.id))
            if access_token.used:
                return results.precondition(Reason.ALREADY_USED)
            return results.precondition(Reason.EXPIRED)

        token_id = access_token.id
        payload = access_token.payload or {}
        profile = await self._find_or_create_profile(access_token.email, payload)

        created = await EntryStateMachine(self.db, clock=self.clock).create_entry(
            player_id=profile.id,
            competition_id=UUID(payload["competition_id"]),
            entry_path=EntryPath.MAGIC_LINK,
            terms_version=payload.get("terms_version"),
            now=now,
            commit=False,
        )
        if not created.ok:
            await self.db.rollback()
            logger.info(
                "magic_link_consume_rolled_back",
                token_id=str(token_id),
                reason=created.reason.value if created.reason else None,
            )
            return created

        entry = created.value
        await self.db.execute(
            update(EntryAccessToken)
            .where(EntryAccessToken.id == token_id)
            .values(profile_id=profile.id, entry_id=entry.id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        access_token = await self._find(token)
        logger.info(
            "magic_link_consumed",
            token_id=str(access_token.id),
            profile_id=str(profile.id),
            entry_id=str(entry.id),
        )
        return results.ok(MagicLinkConsumption(token=access_token, profile=profile, entry=entry))

    async def _find_or_create_profile(self, email: str, payload: dict[str, Any]) -> Profile:
        details = {name: payload.get(name) for name in PROFILE_FIELDS if payload.get(name) is not None}

        await self.db.execute(
            insert_ignoring_conflicts(
                self.db,
                Profile.__table__,
                index_elements=["email"],
                values={"id": uuid4(), "email": email, **details},
            )
        )
        if details:
            await self.db.execute(
                update(Profile)
                .where(Profile.email == email)
                .values(**details)
                .execution_options(synchronize_session=False)
            )

        result = await self.db.execute(
            select(Profile)
            .where(Profile.email == email)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
