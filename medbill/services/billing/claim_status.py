"""
Claim Status State Machine.

State Diagram:
    GENERATED -> SUBMITTED
    SUBMITTED -> ACCEPTED | REJECTED
    REJECTED -> APPEALED
    APPEALED -> RESUBMITTED
    RESUBMITTED -> ACCEPTED | REJECTED
    ACCEPTED -> PAID

A claim's content is immutable once generated; only its status moves,
and every move produces a StatusChange for claim_status_history.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from medbill.core.enums import ClaimStatus

logger = logging.getLogger(__name__)


class TransitionEvent(str, Enum):
    """Events that trigger status transitions."""

    SUBMIT = "submit"
    ACCEPT = "accept"
    REJECT = "reject"
    APPEAL = "appeal"
    RESUBMIT = "resubmit"
    PAY = "pay"


@dataclass
class Transition:
    """Represents a valid status transition."""

    from_status: ClaimStatus
    to_status: ClaimStatus
    event: TransitionEvent
    requires_reason: bool = False


@dataclass
class StatusChange:
    """A completed transition, ready to be written to history."""

    claim_id: str
    previous_status: ClaimStatus
    new_status: ClaimStatus
    event: TransitionEvent
    actor: Optional[str] = None
    reason: Optional[str] = None
    changed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InvalidTransitionError(ValueError):
    """Requested event is not allowed from the claim's current status."""

    pass


# =============================================================================
# Valid Transitions Definition
# =============================================================================


VALID_TRANSITIONS: list[Transition] = [
    Transition(ClaimStatus.GENERATED, ClaimStatus.SUBMITTED, TransitionEvent.SUBMIT),
    Transition(ClaimStatus.SUBMITTED, ClaimStatus.ACCEPTED, TransitionEvent.ACCEPT),
    Transition(
        ClaimStatus.SUBMITTED, ClaimStatus.REJECTED, TransitionEvent.REJECT, requires_reason=True
    ),
    Transition(
        ClaimStatus.REJECTED, ClaimStatus.APPEALED, TransitionEvent.APPEAL, requires_reason=True
    ),
    Transition(ClaimStatus.APPEALED, ClaimStatus.RESUBMITTED, TransitionEvent.RESUBMIT),
    Transition(ClaimStatus.RESUBMITTED, ClaimStatus.ACCEPTED, TransitionEvent.ACCEPT),
    Transition(
        ClaimStatus.RESUBMITTED, ClaimStatus.REJECTED, TransitionEvent.REJECT, requires_reason=True
    ),
    Transition(ClaimStatus.ACCEPTED, ClaimStatus.PAID, TransitionEvent.PAY),
]


# =============================================================================
# State Machine
# =============================================================================


class ClaimStatusMachine:
    """Validates and applies claim status transitions."""

    def __init__(self, transitions: Optional[list[Transition]] = None):
        self._transitions: dict[tuple[ClaimStatus, TransitionEvent], Transition] = {}
        self._from_status_map: dict[ClaimStatus, list[Transition]] = {}

        for transition in transitions or VALID_TRANSITIONS:
            self._transitions[(transition.from_status, transition.event)] = transition
            self._from_status_map.setdefault(transition.from_status, []).append(transition)

    def get_valid_events(self, status: ClaimStatus) -> list[TransitionEvent]:
        """Get all valid events for a given status."""
        return [t.event for t in self._from_status_map.get(status, [])]

    def get_next_statuses(self, status: ClaimStatus) -> list[ClaimStatus]:
        """Get all possible next statuses from current status."""
        return [t.to_status for t in self._from_status_map.get(status, [])]

    def can_transition(self, from_status: ClaimStatus, to_status: ClaimStatus) -> bool:
        return to_status in self.get_next_statuses(from_status)

    def apply(
        self,
        claim_id: str,
        current_status: ClaimStatus,
        event: TransitionEvent,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> StatusChange:
        """
        Apply an event to a claim's status.

        Raises:
            InvalidTransitionError: If the event is not allowed or a
                required reason is missing
        """
        transition = self._transitions.get((current_status, event))
        if transition is None:
            logger.warning(
                f"Transition rejected for claim {claim_id}: "
                f"{current_status.value} + {event.value}"
            )
            raise InvalidTransitionError(
                f"Invalid transition: {current_status.value} + {event.value}"
            )

        if transition.requires_reason and not reason:
            raise InvalidTransitionError(f"Reason is required to {event.value} a claim")

        logger.info(
            f"Claim {claim_id} transitioned: "
            f"{current_status.value} -> {transition.to_status.value} (event: {event.value})"
        )
        return StatusChange(
            claim_id=claim_id,
            previous_status=current_status,
            new_status=transition.to_status,
            event=event,
            actor=actor,
            reason=reason,
        )


def is_terminal_status(status: ClaimStatus) -> bool:
    """Check if status is terminal (no further transitions)."""
    return status == ClaimStatus.PAID
