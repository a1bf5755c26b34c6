"""
Hole-in-One Engine - Verifications API
======================================

Win-claim evidence intake (player) and review (staff).
"""

from typing import Union
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import JSONResponse

from holeinone.api.deps import (
    CurrentIdentity,
    CurrentStaff,
    DbSession,
    EngineClock,
    Identity,
    Notifier,
    error_response,
)
from holeinone.api.entries import require_owner_or_staff
from holeinone.core.engine.verification import (
    EvidenceSubmission,
    VerificationWorkflow,
    WitnessInfo,
)
from holeinone.core.models import Entry, Verification
from holeinone.core.schemas import (
    ClaimDecision,
    EngineErrorResponse,
    EvidenceSubmit,
    VerificationResponse,
    VerificationTransitionResponse,
)

router = APIRouter(tags=["Verifications"])


async def load_for_caller(db, verification_id: UUID, identity: Identity) -> Verification:
    """Fetch a verification the caller may act on, or raise 404/403."""
    verification = await db.get(Verification, verification_id)
    if verification is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="verification_not_found",
        )
    if not identity.is_staff:
        entry = await db.get(Entry, verification.entry_id)
        require_owner_or_staff(entry, identity)
    return verification


# ==========================================================================
# Player
# ==========================================================================

@router.put(
    "/entries/{entry_id}/verification",
    response_model=VerificationResponse,
    summary="Ensure the verification record exists",
    responses={
        404: {"model": EngineErrorResponse},
        409: {"model": EngineErrorResponse, "description": "Entry is not a win claim"},
    },
)
async def ensure_verification(
    entry_id: UUID,
    identity: CurrentIdentity,
    db: DbSession,
    clock: EngineClock,
) -> Union[VerificationResponse, JSONResponse]:
    """Idempotent. Called before the evidence screen loads."""
    entry = await db.get(Entry, entry_id)
    if entry is not None:
        require_owner_or_staff(entry, identity)

    result = await VerificationWorkflow(db, clock=clock).ensure_verification(entry_id, clock.now())
    if not result.ok:
        return error_response(result)
    return VerificationResponse.model_validate(result.value)


@router.get(
    "/entries/{entry_id}/verification",
    response_model=VerificationResponse,
    summary="Get the verification for an entry",
    responses={404: {"model": EngineErrorResponse}},
)
async def get_entry_verification(
    entry_id: UUID,
    identity: CurrentIdentity,
    db: DbSession,
) -> Union[VerificationResponse, JSONResponse]:
    entry = await db.get(Entry, entry_id)
    if entry is not None:
        require_owner_or_staff(entry, identity)

    result = await VerificationWorkflow(db).get_for_entry(entry_id)
    if not result.ok:
        return error_response(result)
    return VerificationResponse.model_validate(result.value)


@router.post(
    "/entries/{entry_id}/evidence",
    response_model=VerificationResponse,
    summary="Submit win-claim evidence",
    responses={
        403: {"model": EngineErrorResponse},
        404: {"model": EngineErrorResponse},
        409: {"model": EngineErrorResponse, "description": "Verification closed"},
        422: {"model": EngineErrorResponse, "description": "Invalid evidence URL"},
    },
)
async def submit_evidence(
    entry_id: UUID,
    data: EvidenceSubmit,
    identity: CurrentIdentity,
    db: DbSession,
    clock: EngineClock,
) -> Union[VerificationResponse, JSONResponse]:
    """
    Attach evidence URLs and witnesses.

    URLs must be absolute http(s) or storage paths under
    `verifications/<entry_id>/`.
    """
    evidence = EvidenceSubmission(
        selfie_url=data.selfie_url,
        id_document_url=data.id_document_url,
        handicap_proof_url=data.handicap_proof_url,
        video_url=data.video_url,
        witnesses=[WitnessInfo(name=w.name, email=w.email, phone=w.phone) for w in data.witnesses],
        social_consent=data.social_consent,
    )
    result = await VerificationWorkflow(db, clock=clock).submit_evidence(
        entry_id,
        evidence,
        now=clock.now(),
        player_id=identity.id,
    )
    if not result.ok:
        return error_response(result)
    return VerificationResponse.model_validate(result.value)


# ==========================================================================
# Staff
# ==========================================================================

@router.get(
    "/verifications",
    response_model=list[VerificationResponse],
    summary="Open win claims, earliest deadline first",
)
async def list_open_verifications(
    staff: CurrentStaff,
    db: DbSession,
    limit: int = Query(50, ge=1, le=200),
) -> list[VerificationResponse]:
    claims = await VerificationWorkflow(db).list_open(limit=limit)
    return [VerificationResponse.model_validate(v) for v in claims]


@router.post(
    "/verifications/{verification_id}/claim",
    response_model=VerificationResponse,
    summary="Move a claim to under review",
    responses={
        404: {"model": EngineErrorResponse},
        409: {"model": EngineErrorResponse, "description": "Already resolved"},
    },
)
async def claim_for_review(
    verification_id: UUID,
    staff: CurrentStaff,
    db: DbSession,
    clock: EngineClock,
) -> Union[VerificationResponse, JSONResponse]:
    result = await VerificationWorkflow(db, clock=clock).claim_for_review(
        verification_id, staff.id, clock.now()
    )
    if not result.ok:
        return error_response(result)
    return VerificationResponse.model_validate(result.value)


@router.post(
    "/verifications/{verification_id}/decision",
    response_model=VerificationTransitionResponse,
    summary="Verify or reject a win claim",
    responses={
        404: {"model": EngineErrorResponse},
        409: {"model": EngineErrorResponse, "description": "Already resolved"},
    },
)
async def decide(
    verification_id: UUID,
    data: ClaimDecision,
    staff: CurrentStaff,
    db: DbSession,
    clock: EngineClock,
    notifier: Notifier,
) -> Union[VerificationTransitionResponse, JSONResponse]:
    """
    Terminal decision. A second decision on the same claim is a 409
    `already_resolved`, never an overwrite.
    """
    result = await VerificationWorkflow(db, clock=clock, notifier=notifier).decide(
        verification_id,
        data.decision,
        staff_id=staff.id,
        now=clock.now(),
        notes=data.notes,
    )
    if not result.ok:
        return error_response(result)
    return VerificationTransitionResponse(
        applied=True,
        verification=VerificationResponse.model_validate(result.value),
        notified=result.notified,
    )
