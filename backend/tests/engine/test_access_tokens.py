"""
Hole-in-One Engine - Magic Link Tests
=====================================

Single-use entry-access links: issue, consume, expiry and rollback.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import func, select

from holeinone.core.engine.access_tokens import MagicLinkService, normalise_email
from holeinone.core.engine.entries import EntryStateMachine
from holeinone.core.engine.notifications import NotificationCommand
from holeinone.core.engine.results import Reason, ResultKind
from holeinone.core.models import (
    CompetitionStatus,
    Entry,
    EntryAccessToken,
    EntryPath,
    EntryStatus,
    Profile,
)


def player_details(competition_id) -> dict:
    return {
        "competition_id": str(competition_id),
        "first_name": "Alex",
        "last_name": "Fairway",
        "age_years": 34,
        "handicap": 12,
        "phone_e164": "+447700900123",
    }


async def count(session, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


class TestIssue:
    """Tests for issue."""

    async def test_issue_stores_token_and_sends_link(
        self, db_session, clock, competition, notifier
    ):
        result = await MagicLinkService(db_session, clock=clock, notifier=notifier).issue(
            "  Alex@Example.COM ", player_details(competition.id), clock.now()
        )

        assert result.ok
        assert result.notified is True
        token = result.value
        assert token.email == "alex@example.com"
        assert token.used is False
        assert token.expires_at == clock.now() + timedelta(hours=6)

        sent = notifier.sent[0]
        assert sent.command == NotificationCommand.SEND_MAGIC_LINK
        assert sent.to == "alex@example.com"
        assert sent.data["url"].endswith(f"token={token.token}")

    async def test_custom_ttl(self, db_session, clock, competition):
        result = await MagicLinkService(db_session, clock=clock).issue(
            "alex@example.com", player_details(competition.id), clock.now(), ttl=timedelta(minutes=30)
        )
        assert result.value.expires_at == clock.now() + timedelta(minutes=30)

    async def test_issue_requires_open_competition(self, db_session, clock, make_competition):
        ended = await make_competition(status=CompetitionStatus.ENDED)
        service = MagicLinkService(db_session, clock=clock)

        closed = await service.issue("alex@example.com", player_details(ended.id), clock.now())
        assert closed.reason == Reason.COMPETITION_INACTIVE

        unknown = await service.issue("alex@example.com", player_details(uuid4()), clock.now())
        assert unknown.reason == Reason.COMPETITION_NOT_FOUND

        missing = await service.issue("alex@example.com", {"first_name": "Alex"}, clock.now())
        assert missing.reason == Reason.COMPETITION_NOT_FOUND

    def test_normalise_email(self):
        assert normalise_email(" Alex@Example.COM\n") == "alex@example.com"


class TestConsume:
    """Tests for consume."""

    async def test_consume_creates_profile_and_entry(self, db_session, clock, competition):
        service = MagicLinkService(db_session, clock=clock)
        token = (await service.issue("alex@example.com", player_details(competition.id), clock.now())).value.token

        clock.advance(minutes=10)
        result = await service.consume(token, clock.now())

        assert result.ok
        consumed = result.value
        assert consumed.profile.email == "alex@example.com"
        assert consumed.profile.handicap == 12
        assert consumed.entry.player_id == consumed.profile.id
        assert consumed.entry.entry_path == EntryPath.MAGIC_LINK
        assert consumed.entry.window_minutes == 360
        assert consumed.entry.status == EntryStatus.ACTIVE
        assert consumed.token.used is True
        assert consumed.token.entry_id == consumed.entry.id
        assert consumed.token.profile_id == consumed.profile.id

    async def test_existing_profile_reused(self, db_session, clock, make_competition):
        first = await make_competition()
        second = await make_competition()
        service = MagicLinkService(db_session, clock=clock)

        token_a = (await service.issue("alex@example.com", player_details(first.id), clock.now())).value.token
        token_b = (await service.issue("ALEX@example.com", player_details(second.id), clock.now())).value.token
        profile_a = (await service.consume(token_a, clock.now())).value.profile.id
        profile_b = (await service.consume(token_b, clock.now())).value.profile.id

        assert profile_a == profile_b
        assert await count(db_session, Profile) == 1

    async def test_used_and_unknown_tokens(self, db_session, clock, competition):
        service = MagicLinkService(db_session, clock=clock)
        token = (await service.issue("alex@example.com", player_details(competition.id), clock.now())).value.token
        assert (await service.consume(token, clock.now())).ok

        again = await service.consume(token, clock.now())
        assert again.kind == ResultKind.PRECONDITION_FAILED
        assert again.reason == Reason.ALREADY_USED

        unknown = await service.consume("not-a-token", clock.now())
        assert unknown.kind == ResultKind.VALIDATION
        assert unknown.reason == Reason.NOT_FOUND

    async def test_expired_token_is_inert(self, db_session, clock, competition):
        """An expired link produces no profile and no entry."""
        service = MagicLinkService(db_session, clock=clock)
        token = (await service.issue("alex@example.com", player_details(competition.id), clock.now())).value.token

        clock.advance(hours=7)
        result = await service.consume(token, clock.now())

        assert result.reason == Reason.EXPIRED
        assert await count(db_session, Profile) == 0
        assert await count(db_session, Entry) == 0
        stored = await db_session.scalar(
            select(EntryAccessToken)
            .where(EntryAccessToken.token == token)
            .execution_options(populate_existing=True)
        )
        assert stored.used is False

    async def test_failed_entry_creation_rolls_back(self, db_session, clock, competition):
        """Consuming during the player's cooldown leaves the link usable."""
        first_entry_at = clock.now()
        service = MagicLinkService(db_session, clock=clock)
        first = (await service.issue("alex@example.com", player_details(competition.id), clock.now())).value.token
        player = (await service.consume(first, clock.now())).value.profile.id

        second = (await service.issue("alex@example.com", player_details(competition.id), clock.now())).value.token
        blocked = await service.consume(second, clock.now())

        assert blocked.reason == Reason.COOLDOWN_ACTIVE
        stored = await db_session.scalar(
            select(EntryAccessToken)
            .where(EntryAccessToken.token == second)
            .execution_options(populate_existing=True)
        )
        assert stored.used is False
        assert stored.entry_id is None
        entries = await db_session.scalar(
            select(func.count()).select_from(Entry).where(Entry.player_id == player)
        )
        assert entries == 1

        clock.advance(hours=2)
        retried = await service.consume(second, clock.now())
        assert retried.reason == Reason.COOLDOWN_ACTIVE
        assert retried.retry_at == first_entry_at + timedelta(hours=12)

    async def test_concurrent_consumes_single_success(
        self, session_factory, db_session, clock, competition
    ):
        token = (await MagicLinkService(db_session, clock=clock).issue(
            "alex@example.com", player_details(competition.id), clock.now()
        )).value.token

        async def consume():
            async with session_factory() as session:
                return await MagicLinkService(session, clock=clock).consume(token, clock.now())

        outcomes = await asyncio.gather(*(consume() for _ in range(4)))

        assert sum(1 for r in outcomes if r.ok) == 1
        assert all(r.reason == Reason.ALREADY_USED for r in outcomes if not r.ok)
        assert await count(db_session, Profile) == 1
        assert await count(db_session, Entry) == 1

    async def test_consumed_entry_follows_state_machine(self, db_session, clock, competition):
        """The created entry reports outcomes like any other."""
        service = MagicLinkService(db_session, clock=clock)
        token = (await service.issue("alex@example.com", player_details(competition.id), clock.now())).value.token
        consumed = (await service.consume(token, clock.now())).value
        entry_id = consumed.entry.id
        profile_id = consumed.profile.id

        clock.advance(hours=5)
        result = await EntryStateMachine(db_session, clock=clock).report_outcome(
            entry_id, "miss", clock.now(), player_id=profile_id
        )
        assert result.ok
