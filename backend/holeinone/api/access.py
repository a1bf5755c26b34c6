"""
Hole-in-One Engine - Entry Access API
=====================================

Magic links (email-first entry) and staff-code redemption.
"""

from typing import Union

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from holeinone.api.deps import (
    CurrentIdentity,
    DbSession,
    EngineClock,
    Notifier,
    create_access_token,
    error_response,
)
from holeinone.api.entries import entry_response, require_owner_or_staff
from holeinone.core.engine.access_tokens import MagicLinkService
from holeinone.core.engine.staff_codes import StaffCodeService
from holeinone.core.models import Entry
from holeinone.core.schemas import (
    EngineErrorResponse,
    MagicLinkConsumeRequest,
    MagicLinkConsumeResponse,
    MagicLinkIssuedResponse,
    MagicLinkRequest,
    ProfileResponse,
    StaffCodeRedeemRequest,
    StaffCodeRedeemResponse,
)

router = APIRouter(prefix="/access", tags=["Entry Access"])


# ==========================================================================
# Magic Links
# ==========================================================================

@router.post(
    "/magic-links",
    response_model=MagicLinkIssuedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Email a single-use entry link",
    responses={
        404: {"model": EngineErrorResponse, "description": "Unknown competition"},
        409: {"model": EngineErrorResponse, "description": "Competition not accepting entries"},
    },
)
async def issue_magic_link(
    data: MagicLinkRequest,
    db: DbSession,
    clock: EngineClock,
    notifier: Notifier,
) -> Union[MagicLinkIssuedResponse, JSONResponse]:
    """
    Store the player's details against a fresh link and email it.

    The link is single-use and expires after MAGIC_LINK_TTL_HOURS.
    """
    payload = data.model_dump(mode="json", exclude={"email"}, exclude_none=True)
    result = await MagicLinkService(db, clock=clock, notifier=notifier).issue(
        data.email, payload, now=clock.now()
    )
    if not result.ok:
        return error_response(result)
    return MagicLinkIssuedResponse(
        email=result.value.email,
        expires_at=result.value.expires_at,
        notified=result.notified,
    )


@router.post(
    "/magic-links/consume",
    response_model=MagicLinkConsumeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Consume a magic link and create the entry",
    responses={
        404: {"model": EngineErrorResponse, "description": "Unknown token"},
        409: {"model": EngineErrorResponse, "description": "Expired, already used, or entry refused"},
    },
)
async def consume_magic_link(
    data: MagicLinkConsumeRequest,
    db: DbSession,
    clock: EngineClock,
) -> Union[MagicLinkConsumeResponse, JSONResponse]:
    """
    Flip the link to used, find-or-create the profile and create the
    entry, all in one transaction. Returns a player token for the new
    profile.
    """
    now = clock.now()
    result = await MagicLinkService(db, clock=clock).consume(data.token, now=now)
    if not result.ok:
        return error_response(result)

    consumed = result.value
    return MagicLinkConsumeResponse(
        profile=ProfileResponse.model_validate(consumed.profile),
        entry=entry_response(consumed.entry, now),
        access_token=create_access_token(consumed.profile.id, role="player"),
    )


# ==========================================================================
# Staff Codes
# ==========================================================================

@router.post(
    "/staff-codes/redeem",
    response_model=StaffCodeRedeemResponse,
    summary="Redeem a venue staff code against an entry",
    responses={
        404: {"model": EngineErrorResponse, "description": "Unknown code or entry"},
        409: {"model": EngineErrorResponse, "description": "Code unusable, or the entry is cooling down"},
        429: {"model": EngineErrorResponse, "description": "Too many failed attempts"},
    },
)
async def redeem_staff_code(
    data: StaffCodeRedeemRequest,
    request: Request,
    identity: CurrentIdentity,
    db: DbSession,
    clock: EngineClock,
) -> Union[StaffCodeRedeemResponse, JSONResponse]:
    """
    Every attempt is audited, including rejected ones.

    A pending entry is settled by the code and its attempt window opens.
    """
    entry = await db.get(Entry, data.entry_id)
    if entry is not None:
        require_owner_or_staff(entry, identity)

    result = await StaffCodeService(db, clock=clock).redeem(
        data.code_prefix,
        data.code_suffix,
        data.entry_id,
        now=clock.now(),
        ip_address=request.client.host if request.client else None,
    )
    if not result.ok:
        return error_response(result)

    redemption = result.value
    return StaffCodeRedeemResponse(
        ok=True,
        staff_code_id=redemption.code.id,
        current_uses=redemption.code.current_uses,
        max_uses=redemption.code.max_uses,
        attempted_at=redemption.attempt.attempted_at,
        entry=entry_response(redemption.entry, clock.now()),
    )
