"""
Hole-in-One Engine - Sweeps API
===============================

Staff-triggered expiry sweep and auto-miss monitoring.
"""

from fastapi import APIRouter, Query

from holeinone.api.deps import CurrentStaff, DbSession, EngineClock
from holeinone.core.config import settings
from holeinone.core.engine.entries import EntryStateMachine
from holeinone.core.engine.verification import VerificationWorkflow
from holeinone.core.schemas import AutoMissStatusResponse, SweepReportResponse

router = APIRouter(prefix="/sweeps", tags=["Sweeps"])


@router.post(
    "/run",
    response_model=SweepReportResponse,
    summary="Run one expiry sweep now",
)
async def run_sweep(
    staff: CurrentStaff,
    db: DbSession,
    clock: EngineClock,
    batch_size: int = Query(settings.SWEEP_BATCH_SIZE, ge=1, le=1000),
) -> SweepReportResponse:
    """
    Auto-miss overdue entries and timed-out win claims.

    Safe to call while the background sweeper is running.
    """
    now = clock.now()
    entries = await EntryStateMachine(db, clock=clock).sweep_expired_entries(now, batch_size)
    verifications = await VerificationWorkflow(db, clock=clock).sweep_expired_verifications(
        now, batch_size
    )
    return SweepReportResponse(
        entries_auto_missed=entries,
        verifications_auto_missed=verifications,
    )


@router.get(
    "/auto-miss-status",
    response_model=AutoMissStatusResponse,
    summary="Open win claims and their deadlines",
)
async def auto_miss_status(
    staff: CurrentStaff,
    db: DbSession,
    clock: EngineClock,
) -> AutoMissStatusResponse:
    status = await VerificationWorkflow(db, clock=clock).auto_miss_status(clock.now())
    return AutoMissStatusResponse(
        pending=status.pending,
        overdue=status.overdue,
        next_deadline=status.next_deadline,
    )
