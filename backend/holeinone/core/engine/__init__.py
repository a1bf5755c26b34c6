"""
Hole-in-One Lifecycle Engine
============================

Rules for how an Entry moves from creation through payment, attempt
window, self-reported outcome, verification and terminal resolution.

Components:
- CooldownEnforcer: re-entry gate per player and competition
- EntryStateMachine: entry creation, payment, outcome, auto-miss, play-again
- VerificationWorkflow: evidence intake, staff review, claim timeout
- WitnessService: third-party confirmation tokens
- MagicLinkService: single-use entry-access links
- StaffCodeService: venue code redemption with attempt audit
- ExpirySweeper: periodic auto-miss pass
"""

from holeinone.core.engine.access_tokens import MagicLinkService
from holeinone.core.engine.clock import FixedClock, SystemClock
from holeinone.core.engine.cooldown import CooldownEnforcer
from holeinone.core.engine.entries import EntryStateMachine, PaymentFact
from holeinone.core.engine.notifications import NotificationClient
from holeinone.core.engine.results import EngineResult, Reason, ResultKind
from holeinone.core.engine.staff_codes import StaffCodeService
from holeinone.core.engine.sweeper import ExpirySweeper, SweepReport
from holeinone.core.engine.verification import VerificationWorkflow
from holeinone.core.engine.witness import WitnessService

__all__ = [
    "CooldownEnforcer",
    "EngineResult",
    "EntryStateMachine",
    "ExpirySweeper",
    "FixedClock",
    "MagicLinkService",
    "NotificationClient",
    "PaymentFact",
    "Reason",
    "ResultKind",
    "StaffCodeService",
    "SweepReport",
    "SystemClock",
    "VerificationWorkflow",
    "WitnessService",
]
