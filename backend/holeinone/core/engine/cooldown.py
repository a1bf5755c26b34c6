"""
Cooldown Enforcer
=================

A player may not re-enter a competition until ENTRY_COOLDOWN_HOURS after
their most recent paid entry. The read is advisory; the same predicate is
exposed as an EXISTS clause so writers re-check it inside the statement
that inserts or pays an entry.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from holeinone.core.config import settings
from holeinone.core.engine.clock import Clock, SystemClock, as_utc
from holeinone.core.models import Entry

logger = structlog.get_logger()


@dataclass(frozen=True)
class CooldownDecision:
    allowed: bool
    retry_at: Optional[datetime] = None


def recent_paid_entry_exists(
    player_id: UUID,
    competition_id: UUID,
    now: datetime,
    cooldown: timedelta,
    exclude_entry_id: Optional[UUID] = None,
):
    """
    EXISTS clause matching a paid entry inside the cooldown window.

    Uses an alias so it never correlates with an outer INSERT/UPDATE on
    the entries table.
    """
    recent = aliased(Entry)
    conditions = [
        recent.player_id == player_id,
        recent.competition_id == competition_id,
        recent.paid.is_(True),
        recent.entry_date > now - cooldown,
    ]
    if exclude_entry_id is not None:
        conditions.append(recent.id != exclude_entry_id)
    return exists().where(*conditions)


class CooldownEnforcer:
    """Decides whether a player may create a new entry for a competition."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Optional[Clock] = None,
        cooldown: Optional[timedelta] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.cooldown = cooldown if cooldown is not None else settings.entry_cooldown

    async def can_enter(
        self,
        player_id: UUID,
        competition_id: UUID,
        now: Optional[datetime] = None,
    ) -> CooldownDecision:
        now = as_utc(now) if now is not None else self.clock.now()

        result = await self.db.execute(
            select(Entry.entry_date)
            .where(
                Entry.player_id == player_id,
                Entry.competition_id == competition_id,
                Entry.paid.is_(True),
                Entry.entry_date >= now - self.cooldown,
            )
            .order_by(Entry.entry_date.desc())
            .limit(1)
        )
        last_entry_date = result.scalar_one_or_none()

        if last_entry_date is None:
            return CooldownDecision(allowed=True)

        retry_at = as_utc(last_entry_date) + self.cooldown
        allowed = retry_at <= now
        if not allowed:
            logger.debug(
                "cooldown_blocked",
                player_id=str(player_id),
                competition_id=str(competition_id),
                retry_at=retry_at.isoformat(),
            )
        return CooldownDecision(allowed=allowed, retry_at=None if allowed else retry_at)
