"""
Hole-in-One Engine - Pydantic Schemas
=====================================

Request and response schemas for API validation.
Enum fields reject unknown values before anything reaches the engine.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from holeinone.core.models import (
    EntryOutcome,
    EntryPath,
    EntryStatus,
    VerificationStatus,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    @field_validator("*", mode="after")
    @classmethod
    def normalise_datetimes(cls, v: Any) -> Any:
        """Treat naive timestamps (SQLite read-back) as UTC."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Entry Schemas
# ==========================================================================

class PaymentFactSchema(BaseSchema):
    """Payment confirmation from the payment collaborator (never from the player)."""

    paid: bool
    amount_minor: Optional[int] = Field(None, ge=0)
    payment_date: Optional[datetime] = None
    payment_provider: Optional[str] = Field(None, max_length=50)


class EntryCreate(BaseSchema):
    """
    Schema for requesting a new instant entry.

    Fee-bearing entries start pending; payment is confirmed separately.
    Unknown fields are rejected.
    """

    model_config = ConfigDict(extra="forbid")

    competition_id: UUID
    terms_version: Optional[str] = Field(None, max_length=20)


class OutcomeReport(BaseSchema):
    """Self-reported outcome. Only win or miss is accepted by the engine."""

    outcome: EntryOutcome


class EntryResponse(TimestampSchema):
    """Schema for entry in responses."""

    id: UUID
    competition_id: UUID
    player_id: UUID
    entry_path: EntryPath
    window_minutes: int
    entry_date: datetime
    paid: bool
    amount_minor: Optional[int] = None
    payment_date: Optional[datetime] = None
    payment_provider: Optional[str] = None
    status: EntryStatus
    attempt_window_start: Optional[datetime] = None
    attempt_window_end: Optional[datetime] = None
    outcome_self: Optional[EntryOutcome] = None
    outcome_reported_at: Optional[datetime] = None
    outcome_official: Optional[EntryOutcome] = None
    completed_at: Optional[datetime] = None
    terms_accepted_at: Optional[datetime] = None
    terms_version: Optional[str] = None
    seconds_remaining: int = 0


class EntryTransitionResponse(BaseSchema):
    """
    Result of a state-changing entry call.

    ``applied`` is false when another actor won the race; ``entry``
    then holds the state that won.
    """

    applied: bool
    reason: Optional[str] = None
    entry: EntryResponse
    verification: Optional["VerificationResponse"] = None


class CooldownResponse(BaseSchema):
    allowed: bool
    retry_at: Optional[datetime] = None


# ==========================================================================
# Verification Schemas
# ==========================================================================

class WitnessSchema(BaseSchema):
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=20)


class EvidenceSubmit(BaseSchema):
    """Evidence URLs returned by the storage service, plus witness details."""

    selfie_url: Optional[str] = Field(None, max_length=2000)
    id_document_url: Optional[str] = Field(None, max_length=2000)
    handicap_proof_url: Optional[str] = Field(None, max_length=2000)
    video_url: Optional[str] = Field(None, max_length=2000)
    witnesses: list[WitnessSchema] = []
    social_consent: Optional[bool] = None


class VerificationResponse(TimestampSchema):
    """Schema for verification in responses."""

    id: UUID
    entry_id: UUID
    status: VerificationStatus
    evidence_captured_at: Optional[datetime] = None
    selfie_url: Optional[str] = None
    id_document_url: Optional[str] = None
    handicap_proof_url: Optional[str] = None
    video_url: Optional[str] = None
    witnesses: list[dict[str, Any]] = []
    social_consent: bool = False
    auto_miss_at: Optional[datetime] = None
    auto_miss_applied: bool = False
    review_started_at: Optional[datetime] = None
    witness_confirmed_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    verified_by: Optional[UUID] = None
    decision_notes: Optional[str] = None


class VerificationTransitionResponse(BaseSchema):
    applied: bool
    reason: Optional[str] = None
    verification: VerificationResponse
    notified: Optional[bool] = None


class ClaimDecision(BaseSchema):
    """Staff decision on a win claim."""

    decision: VerificationStatus
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("decision")
    @classmethod
    def validate_decision(cls, v: VerificationStatus) -> VerificationStatus:
        if v not in (VerificationStatus.VERIFIED, VerificationStatus.REJECTED):
            raise ValueError("Decision must be 'verified' or 'rejected'")
        return v


class AutoMissStatusResponse(BaseSchema):
    pending: int
    overdue: int
    next_deadline: Optional[datetime] = None


class SweepReportResponse(BaseSchema):
    entries_auto_missed: list[UUID]
    verifications_auto_missed: list[UUID]


# ==========================================================================
# Witness Schemas
# ==========================================================================

class WitnessConfirmationResponse(BaseSchema):
    """Witness request as shown to the player (token withheld)."""

    id: UUID
    verification_id: UUID
    witness_name: str
    witness_email: str
    witness_phone: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    confirmed_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None


class WitnessIssueResponse(BaseSchema):
    confirmation: WitnessConfirmationResponse
    notified: Optional[bool] = None


class WitnessConfirmRequest(BaseSchema):
    token: str = Field(min_length=1, max_length=128)


class WitnessConfirmResponse(BaseSchema):
    ok: bool
    reason: Optional[str] = None
    confirmed_at: Optional[datetime] = None


# ==========================================================================
# Entry Access Schemas
# ==========================================================================

class MagicLinkRequest(BaseSchema):
    """Player details captured before any account exists."""

    email: EmailStr
    competition_id: UUID
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    age_years: Optional[int] = Field(None, ge=0, le=120)
    handicap: Optional[int] = Field(None, ge=-10, le=54)
    phone_e164: Optional[str] = Field(None, max_length=20)
    terms_version: Optional[str] = Field(None, max_length=20)


class MagicLinkIssuedResponse(BaseSchema):
    email: str
    expires_at: datetime
    notified: Optional[bool] = None


class MagicLinkConsumeRequest(BaseSchema):
    token: str = Field(min_length=1, max_length=128)


class ProfileResponse(TimestampSchema):
    id: UUID
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    age_years: Optional[int] = None
    handicap: Optional[int] = None
    phone_e164: Optional[str] = None


class MagicLinkConsumeResponse(BaseSchema):
    """Created profile and entry, plus a player token for follow-up calls."""

    profile: ProfileResponse
    entry: EntryResponse
    access_token: str
    token_type: str = "bearer"


class StaffCodeRedeemRequest(BaseSchema):
    code_prefix: str = Field(min_length=1, max_length=20)
    code_suffix: str = Field(min_length=1, max_length=20)
    entry_id: UUID


class StaffCodeRedeemResponse(BaseSchema):
    ok: bool
    staff_code_id: UUID
    current_uses: int
    max_uses: Optional[int] = None
    attempted_at: datetime
    entry: EntryResponse


# ==========================================================================
# Common Schemas
# ==========================================================================

class EngineErrorResponse(BaseSchema):
    """Failure returned by an engine operation."""

    reason: str
    retry_at: Optional[datetime] = None
    detail: Optional[str] = None


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    sweeper: str


EntryTransitionResponse.model_rebuild()
