"""
Engine Results
==============

Typed outcomes returned by every engine operation.

Engine operations never raise for expected failures. A caller inspects
``result.kind``:

- OK: the transition was applied
- VALIDATION: bad input or unknown id, nothing written
- PRECONDITION_FAILED: valid request the current state does not allow
- RACE_LOST: a conditional write matched zero rows because another actor
  got there first; ``value`` carries the state that won

Storage failures raise and are reported by the API as a generic 500.
A failed notification after a committed change only sets ``notified``
to False.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


class ResultKind(str, enum.Enum):
    OK = "ok"
    VALIDATION = "validation"
    PRECONDITION_FAILED = "precondition_failed"
    RACE_LOST = "race_lost"


class Reason(str, enum.Enum):
    """Closed set of failure reasons surfaced to callers."""

    # Competition / entry creation
    COMPETITION_NOT_FOUND = "competition_not_found"
    COMPETITION_INACTIVE = "competition_inactive"
    COOLDOWN_ACTIVE = "cooldown_active"
    PAYMENT_NOT_CONFIRMED = "payment_not_confirmed"
    PLAY_AGAIN_NOT_ALLOWED = "play_again_not_allowed"

    # Entry lifecycle
    ENTRY_NOT_FOUND = "entry_not_found"
    NOT_OWNER = "not_owner"
    INVALID_OUTCOME = "invalid_outcome"
    WINDOW_NOT_OPEN = "window_not_open"
    WINDOW_CLOSED = "window_closed"
    ALREADY_REPORTED = "already_reported"
    ALREADY_PAID = "already_paid"

    # Verification
    VERIFICATION_NOT_FOUND = "verification_not_found"
    NOT_A_WIN_CLAIM = "not_a_win_claim"
    VERIFICATION_CLOSED = "verification_closed"
    INVALID_EVIDENCE = "invalid_evidence"
    INVALID_DECISION = "invalid_decision"
    ALREADY_RESOLVED = "already_resolved"

    # Tokens (witness + magic link)
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_CONFIRMED = "already_confirmed"
    ALREADY_USED = "already_used"

    # Staff codes
    CODE_NOT_FOUND = "code_not_found"
    CODE_INACTIVE = "code_inactive"
    CODE_NOT_YET_VALID = "code_not_yet_valid"
    CODE_EXPIRED = "code_expired"
    CODE_EXHAUSTED = "code_exhausted"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class EngineResult:
    kind: ResultKind
    reason: Optional[Reason] = None
    value: Any = None
    retry_at: Optional[datetime] = None
    detail: Optional[str] = None
    notified: Optional[bool] = None

    @property
    def ok(self) -> bool:
        return self.kind == ResultKind.OK

    @property
    def applied(self) -> bool:
        """Whether this call changed state (a lost race did not)."""
        return self.kind == ResultKind.OK


# ==========================================================================
# Constructors
# ==========================================================================

def ok(value: Any = None, notified: Optional[bool] = None) -> EngineResult:
    return EngineResult(kind=ResultKind.OK, value=value, notified=notified)


def validation(reason: Reason, detail: Optional[str] = None) -> EngineResult:
    return EngineResult(kind=ResultKind.VALIDATION, reason=reason, detail=detail)


def precondition(
    reason: Reason,
    retry_at: Optional[datetime] = None,
    detail: Optional[str] = None,
    value: Any = None,
) -> EngineResult:
    return EngineResult(
        kind=ResultKind.PRECONDITION_FAILED,
        reason=reason,
        retry_at=retry_at,
        detail=detail,
        value=value,
    )


def race_lost(reason: Reason, value: Any = None) -> EngineResult:
    return EngineResult(kind=ResultKind.RACE_LOST, reason=reason, value=value)
