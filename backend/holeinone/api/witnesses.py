"""
Hole-in-One Engine - Witnesses API
==================================

Witness requests (player) and the public confirmation endpoint the
witness lands on from their email.
"""

from typing import Union
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse

from holeinone.api.deps import (
    CurrentIdentity,
    DbSession,
    EngineClock,
    Notifier,
    error_response,
)
from holeinone.api.verifications import load_for_caller
from holeinone.core.engine.results import ResultKind
from holeinone.core.engine.verification import WitnessInfo
from holeinone.core.engine.witness import WitnessService
from holeinone.core.schemas import (
    EngineErrorResponse,
    WitnessConfirmationResponse,
    WitnessConfirmRequest,
    WitnessConfirmResponse,
    WitnessIssueResponse,
    WitnessSchema,
)

router = APIRouter(tags=["Witnesses"])


@router.post(
    "/verifications/{verification_id}/witnesses",
    response_model=WitnessIssueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a witness confirmation request",
    responses={
        404: {"model": EngineErrorResponse},
        409: {"model": EngineErrorResponse, "description": "Verification closed"},
    },
)
async def issue_witness_request(
    verification_id: UUID,
    data: WitnessSchema,
    identity: CurrentIdentity,
    db: DbSession,
    clock: EngineClock,
    notifier: Notifier,
) -> Union[WitnessIssueResponse, JSONResponse]:
    await load_for_caller(db, verification_id, identity)

    result = await WitnessService(db, clock=clock, notifier=notifier).issue(
        verification_id,
        WitnessInfo(name=data.name, email=data.email, phone=data.phone),
        now=clock.now(),
    )
    if not result.ok:
        return error_response(result)
    return WitnessIssueResponse(
        confirmation=WitnessConfirmationResponse.model_validate(result.value),
        notified=result.notified,
    )


@router.post(
    "/verifications/{verification_id}/witnesses/resend",
    response_model=WitnessIssueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Resend the latest witness request",
    responses={
        404: {"model": EngineErrorResponse},
        409: {"model": EngineErrorResponse, "description": "Already confirmed or closed"},
    },
)
async def resend_witness_request(
    verification_id: UUID,
    identity: CurrentIdentity,
    db: DbSession,
    clock: EngineClock,
    notifier: Notifier,
) -> Union[WitnessIssueResponse, JSONResponse]:
    await load_for_caller(db, verification_id, identity)

    result = await WitnessService(db, clock=clock, notifier=notifier).resend(
        verification_id, now=clock.now()
    )
    if not result.ok:
        return error_response(result)
    return WitnessIssueResponse(
        confirmation=WitnessConfirmationResponse.model_validate(result.value),
        notified=result.notified,
    )


@router.get(
    "/verifications/{verification_id}/witnesses/latest",
    response_model=WitnessConfirmationResponse,
    summary="Latest witness request for a claim",
)
async def latest_witness_request(
    verification_id: UUID,
    identity: CurrentIdentity,
    db: DbSession,
) -> WitnessConfirmationResponse:
    await load_for_caller(db, verification_id, identity)

    latest = await WitnessService(db).latest(verification_id)
    if latest is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="not_found",
        )
    return WitnessConfirmationResponse.model_validate(latest)


@router.post(
    "/witnesses/confirm",
    response_model=WitnessConfirmResponse,
    summary="Witness confirms a win claim",
    responses={
        404: {"model": EngineErrorResponse, "description": "Unknown token"},
        409: {"model": EngineErrorResponse, "description": "Expired or already confirmed"},
    },
)
async def confirm_witness(
    data: WitnessConfirmRequest,
    request: Request,
    db: DbSession,
    clock: EngineClock,
) -> Union[WitnessConfirmResponse, JSONResponse]:
    """
    Public endpoint, authorised by the token alone.

    A confirmation that loses a race to a simultaneous click returns 200
    with `ok=false` and `already_confirmed`.
    """
    meta = {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": request.client.host if request.client else None,
    }
    result = await WitnessService(db, clock=clock).confirm(data.token, now=clock.now(), meta=meta)

    if result.kind == ResultKind.RACE_LOST:
        return WitnessConfirmResponse(
            ok=False,
            reason=result.reason.value,
            confirmed_at=result.value.confirmed_at,
        )
    if not result.ok:
        return error_response(result)
    return WitnessConfirmResponse(ok=True, confirmed_at=result.value.confirmed_at)
