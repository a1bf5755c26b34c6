"""
Hole-in-One Engine - Database Models
====================================

SQLAlchemy models for the entry and verification lifecycle.
Guard columns (outcome_self, status, used, confirmed_at, auto_miss_applied,
current_uses) are only ever changed through conditional UPDATEs in
holeinone.core.engine.
"""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from holeinone.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class CompetitionStatus(str, enum.Enum):
    """Competition lifecycle. Only ACTIVE accepts entries."""
    SCHEDULED = "SCHEDULED"
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"


class EntryStatus(str, enum.Enum):
    """Lifecycle status of a single entry."""
    PENDING = "pending"        # Awaiting payment, no window yet
    ACTIVE = "active"          # Window open, nothing owed
    PAID = "paid"              # Window open, payment confirmed
    COMPLETED = "completed"    # Outcome self-reported
    EXPIRED = "expired"        # Window or claim lapsed unresolved


class EntryOutcome(str, enum.Enum):
    """Outcome of an attempt (self-reported or official)."""
    WIN = "win"
    MISS = "miss"
    AUTO_MISS = "auto_miss"


class EntryPath(str, enum.Enum):
    """How the entry was requested. Selects the attempt-window length."""
    INSTANT = "instant"
    MAGIC_LINK = "magic_link"
    STAFF_CODE = "staff_code"


class VerificationStatus(str, enum.Enum):
    """Status of the evidence review for a win claim."""
    INITIATED = "initiated"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    VERIFIED = "verified"
    REJECTED = "rejected"


OPEN_VERIFICATION_STATUSES = (
    VerificationStatus.INITIATED,
    VerificationStatus.PENDING,
    VerificationStatus.UNDER_REVIEW,
)


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _enum(enum_cls: type[enum.Enum]) -> Enum:
    """Column type storing enum values (not names)."""
    return Enum(enum_cls, values_callable=_enum_values, name=enum_cls.__name__.lower())


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class Competition(Base, TimestampMixin):
    """
    A hosted hole-in-one challenge.

    Read-mostly from the engine's point of view.
    """

    __tablename__ = "competitions"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    entry_fee: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )  # minor units
    commission_amount: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )  # minor units
    status: Mapped[CompetitionStatus] = mapped_column(
        _enum(CompetitionStatus),
        default=CompetitionStatus.SCHEDULED,
        nullable=False,
        index=True,
    )
    start_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    end_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )  # None = year-round

    def __repr__(self) -> str:
        return f"<Competition {self.name[:50]}>"


class Profile(Base, TimestampMixin):
    """Player identity created from a consumed entry-access token."""

    __tablename__ = "profiles"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    age_years: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    handicap: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    phone_e164: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    def __repr__(self) -> str:
        return f"<Profile {self.email}>"


class Entry(Base, TimestampMixin):
    """
    One play attempt by a player in a competition.

    outcome_self is only ever written NULL -> value. outcome_official holds
    the staff/system disposition of a win claim.
    """

    __tablename__ = "entries"
    __table_args__ = (
        Index("ix_entries_player_competition_date", "player_id", "competition_id", "entry_date"),
        Index("ix_entries_unresolved_window", "outcome_self", "attempt_window_end"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    competition_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("competitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    player_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    entry_path: Mapped[EntryPath] = mapped_column(
        _enum(EntryPath),
        default=EntryPath.INSTANT,
        nullable=False,
    )
    window_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    entry_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Payment (facts supplied by the payment collaborator)
    paid: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    amount_minor: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payment_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    payment_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Lifecycle
    status: Mapped[EntryStatus] = mapped_column(
        _enum(EntryStatus),
        default=EntryStatus.PENDING,
        nullable=False,
        index=True,
    )
    attempt_window_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    attempt_window_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    outcome_self: Mapped[Optional[EntryOutcome]] = mapped_column(
        _enum(EntryOutcome),
        nullable=True,
    )
    outcome_reported_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    outcome_official: Mapped[Optional[EntryOutcome]] = mapped_column(
        _enum(EntryOutcome),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Terms
    terms_accepted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    terms_version: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    @property
    def effective_outcome(self) -> Optional[EntryOutcome]:
        """Official disposition when one exists, else the self-report."""
        return self.outcome_official or self.outcome_self

    def __repr__(self) -> str:
        return f"<Entry {self.id} {self.status.value if self.status else None}>"


class Verification(Base, TimestampMixin):
    """
    Evidence bundle for a win claim, 1:1 with its Entry.
    """

    __tablename__ = "verifications"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    entry_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("entries.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    status: Mapped[VerificationStatus] = mapped_column(
        _enum(VerificationStatus),
        default=VerificationStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Evidence (URLs returned by the storage collaborator)
    evidence_captured_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    selfie_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    id_document_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    handicap_proof_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    video_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    witnesses: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    social_consent: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Deadline
    auto_miss_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )
    auto_miss_applied: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Review
    review_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    witness_confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    verified_by: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    decision_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Verification {self.id} {self.status.value if self.status else None}>"


class WitnessConfirmation(Base):
    """
    Token-backed attestation request sent to a third-party witness.

    Re-sends add rows; earlier unconfirmed rows get superseded_at.
    """

    __tablename__ = "witness_confirmations"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    verification_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("verifications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        index=True,
        nullable=False,
    )
    witness_name: Mapped[str] = mapped_column(String(200), nullable=False)
    witness_email: Mapped[str] = mapped_column(String(255), nullable=False)
    witness_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    superseded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<WitnessConfirmation {self.id}>"


class EntryAccessToken(Base, TimestampMixin):
    """
    Magic-link credential binding a prospective entry to an email identity.
    """

    __tablename__ = "entry_access_tokens"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    token: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        index=True,
        nullable=False,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        index=True,
        nullable=False,
    )
    payload: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )  # first_name, last_name, age_years, handicap, phone_e164, competition_id
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    used: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    profile_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
    )
    entry_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("entries.id", ondelete="SET NULL"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<EntryAccessToken {self.email}>"


class StaffCode(Base, TimestampMixin):
    """Venue-issued redemption code."""

    __tablename__ = "staff_codes"
    __table_args__ = (
        UniqueConstraint("code_prefix", "code_suffix", name="uq_staff_codes_prefix_suffix"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    code_prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    code_suffix: Mapped[str] = mapped_column(String(20), nullable=False)
    active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    valid_from: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    valid_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # None = unbounded
    current_uses: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<StaffCode {self.code_prefix}-****>"


class StaffCodeAttempt(Base):
    """
    Append-only audit row for every staff-code redemption attempt.
    """

    __tablename__ = "staff_code_attempts"
    __table_args__ = (
        Index("ix_staff_code_attempts_entry_time", "entry_id", "attempted_at"),
        Index("ix_staff_code_attempts_ip_time", "ip_address", "attempted_at"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    staff_code_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("staff_codes.id", ondelete="SET NULL"),
        nullable=True,
    )
    entry_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    code_entered: Mapped[str] = mapped_column(String(50), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<StaffCodeAttempt {self.id} success={self.success}>"
