"""
Expiry Sweeper
==============

Stateless periodic job that discovers overdue work:
- entries whose attempt window lapsed unreported
- win claims whose verification deadline passed

Every pass is a set of conditional writes, so passes may overlap with
each other and with live requests. Nothing survives between passes.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from holeinone.core.config import settings
from holeinone.core.database import AsyncSessionLocal
from holeinone.core.engine.clock import Clock, SystemClock, as_utc
from holeinone.core.engine.entries import EntryStateMachine
from holeinone.core.engine.verification import VerificationWorkflow

logger = structlog.get_logger()


@dataclass
class SweepReport:
    entries_auto_missed: list[UUID] = field(default_factory=list)
    verifications_auto_missed: list[UUID] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.entries_auto_missed) + len(self.verifications_auto_missed)

    def to_dict(self) -> dict:
        return {
            "entries_auto_missed": [str(i) for i in self.entries_auto_missed],
            "verifications_auto_missed": [str(i) for i in self.verifications_auto_missed],
        }


class ExpirySweeper:
    """Runs both auto-miss sweeps, each in its own session."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        clock: Optional[Clock] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.clock = clock or SystemClock()
        self.batch_size = batch_size or settings.SWEEP_BATCH_SIZE

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = as_utc(now) if now is not None else self.clock.now()
        report = SweepReport()

        async with self.session_factory() as session:
            machine = EntryStateMachine(session, clock=self.clock)
            report.entries_auto_missed = await machine.sweep_expired_entries(
                now=now, batch_size=self.batch_size
            )

        async with self.session_factory() as session:
            workflow = VerificationWorkflow(session, clock=self.clock)
            report.verifications_auto_missed = await workflow.sweep_expired_verifications(
                now=now, batch_size=self.batch_size
            )

        logger.info(
            "sweep_completed",
            entries_auto_missed=len(report.entries_auto_missed),
            verifications_auto_missed=len(report.verifications_auto_missed),
        )
        return report

    async def run_forever(self, interval: Optional[float] = None) -> None:
        """Sweep every ``interval`` seconds until cancelled."""
        interval = interval or settings.SWEEP_INTERVAL_SECONDS
        logger.info("sweeper_started", interval_seconds=interval)
        try:
            while True:
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error("sweep_failed", error=str(e), exc_info=e)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("sweeper_stopped")
            raise
