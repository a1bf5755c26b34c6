"""
Hole-in-One Engine - Entries API
================================

Entry creation, payment confirmation, outcome reporting and play-again.
"""

from datetime import datetime
from typing import Union
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import JSONResponse

from holeinone.api.deps import (
    CurrentIdentity,
    DbSession,
    EngineClock,
    Identity,
    PaymentAuthority,
    error_response,
)
from holeinone.core.engine.clock import seconds_remaining
from holeinone.core.engine.cooldown import CooldownEnforcer
from holeinone.core.engine.entries import EntryStateMachine, PaymentFact
from holeinone.core.engine.results import ResultKind
from holeinone.core.engine.verification import VerificationWorkflow
from holeinone.core.models import Entry, EntryOutcome, EntryPath
from holeinone.core.schemas import (
    CooldownResponse,
    EngineErrorResponse,
    EntryCreate,
    EntryResponse,
    EntryTransitionResponse,
    OutcomeReport,
    PaymentFactSchema,
    VerificationResponse,
)

router = APIRouter(prefix="/entries", tags=["Entries"])


# ==========================================================================
# Helper Functions
# ==========================================================================

def entry_response(entry: Entry, now: datetime) -> EntryResponse:
    """Serialise an entry with the time left in its attempt window."""
    response = EntryResponse.model_validate(entry)
    if entry.outcome_self is None and entry.attempt_window_end is not None:
        response.seconds_remaining = seconds_remaining(entry.attempt_window_end, now)
    return response


def to_payment_fact(payment: PaymentFactSchema) -> PaymentFact:
    return PaymentFact(
        paid=payment.paid,
        amount_minor=payment.amount_minor,
        payment_date=payment.payment_date,
        payment_provider=payment.payment_provider,
    )


def require_owner_or_staff(entry: Entry, identity: Identity) -> None:
    if entry.player_id != identity.id and not identity.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not your entry",
        )


ERROR_RESPONSES = {
    404: {"model": EngineErrorResponse, "description": "Unknown entry or competition"},
    409: {"model": EngineErrorResponse, "description": "Precondition failed"},
    422: {"description": "Validation error"},
}


# ==========================================================================
# Creation
# ==========================================================================

@router.post(
    "",
    response_model=EntryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an entry",
    responses=ERROR_RESPONSES,
)
async def create_entry(
    data: EntryCreate,
    identity: CurrentIdentity,
    db: DbSession,
    clock: EngineClock,
) -> Union[EntryResponse, JSONResponse]:
    """
    Request a new entry for the calling player.

    - Free competitions open the attempt window immediately
    - Paid competitions start pending until the payment collaborator confirms the fee
    - Players always enter on the instant path
    - 409 `cooldown_active` carries `retry_at`
    """
    now = clock.now()
    result = await EntryStateMachine(db, clock=clock).create_entry(
        player_id=identity.id,
        competition_id=data.competition_id,
        entry_path=EntryPath.INSTANT,
        terms_version=data.terms_version,
        now=now,
    )
    if not result.ok:
        return error_response(result)
    return entry_response(result.value, now)


@router.get(
    "/cooldown",
    response_model=CooldownResponse,
    summary="Check whether the caller may enter a competition",
)
async def get_cooldown(
    identity: CurrentIdentity,
    db: DbSession,
    clock: EngineClock,
    competition_id: UUID = Query(...),
) -> CooldownResponse:
    decision = await CooldownEnforcer(db, clock=clock).can_enter(
        identity.id, competition_id, clock.now()
    )
    return CooldownResponse(allowed=decision.allowed, retry_at=decision.retry_at)


# ==========================================================================
# Reads
# ==========================================================================

@router.get(
    "/{entry_id}",
    response_model=EntryResponse,
    summary="Get an entry",
    responses={404: {"model": EngineErrorResponse}},
)
async def get_entry(
    entry_id: UUID,
    identity: CurrentIdentity,
    db: DbSession,
    clock: EngineClock,
) -> Union[EntryResponse, JSONResponse]:
    """Get an entry. An overdue unreported entry is auto-missed before it is returned."""
    now = clock.now()
    result = await EntryStateMachine(db, clock=clock).get_entry(entry_id, now)
    if not result.ok:
        return error_response(result)
    require_owner_or_staff(result.value, identity)
    return entry_response(result.value, now)


# ==========================================================================
# Transitions
# ==========================================================================

@router.post(
    "/{entry_id}/payment",
    response_model=EntryTransitionResponse,
    summary="Confirm payment for a pending entry",
    responses=ERROR_RESPONSES,
)
async def confirm_payment(
    entry_id: UUID,
    data: PaymentFactSchema,
    authority: PaymentAuthority,
    db: DbSession,
    clock: EngineClock,
) -> Union[EntryTransitionResponse, JSONResponse]:
    """
    Record a payment fact from the payment collaborator or venue staff.

    The fact must be confirmed and cover the competition fee, otherwise
    409 `payment_not_confirmed`.
    """
    now = clock.now()
    result = await EntryStateMachine(db, clock=clock).confirm_payment(
        entry_id, to_payment_fact(data), now
    )
    if result.kind not in (ResultKind.OK, ResultKind.RACE_LOST):
        return error_response(result)
    return EntryTransitionResponse(
        applied=result.applied,
        reason=result.reason.value if result.reason else None,
        entry=entry_response(result.value, now),
    )


@router.post(
    "/{entry_id}/outcome",
    response_model=EntryTransitionResponse,
    summary="Self-report the outcome of an attempt",
    responses={
        **ERROR_RESPONSES,
        403: {"model": EngineErrorResponse, "description": "Not the entry owner"},
    },
)
async def report_outcome(
    entry_id: UUID,
    data: OutcomeReport,
    identity: CurrentIdentity,
    db: DbSession,
    clock: EngineClock,
) -> Union[EntryTransitionResponse, JSONResponse]:
    """
    Report `win` or `miss` while the attempt window is open.

    If the outcome was already set by another tab or the sweep, the
    response is 200 with `applied=false` and the outcome that stands.
    """
    now = clock.now()
    result = await EntryStateMachine(db, clock=clock).report_outcome(
        entry_id,
        data.outcome,
        now=now,
        player_id=identity.id,
    )
    if result.kind not in (ResultKind.OK, ResultKind.RACE_LOST):
        return error_response(result)

    entry = result.value
    verification = None
    if entry.outcome_self == EntryOutcome.WIN:
        found = await VerificationWorkflow(db, clock=clock).get_for_entry(entry.id)
        if found.ok:
            verification = VerificationResponse.model_validate(found.value)

    return EntryTransitionResponse(
        applied=result.applied,
        reason=result.reason.value if result.reason else None,
        entry=entry_response(entry, now),
        verification=verification,
    )


@router.post(
    "/{entry_id}/play-again",
    response_model=EntryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a fresh entry after a miss",
    responses=ERROR_RESPONSES,
)
async def play_again(
    entry_id: UUID,
    identity: CurrentIdentity,
    db: DbSession,
    clock: EngineClock,
) -> Union[EntryResponse, JSONResponse]:
    now = clock.now()
    result = await EntryStateMachine(db, clock=clock).play_again(
        entry_id,
        now=now,
        player_id=identity.id,
    )
    if not result.ok:
        return error_response(result)
    return entry_response(result.value, now)
