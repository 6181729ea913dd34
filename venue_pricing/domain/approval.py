"""Approval lifecycle for ratesheets.

DRAFT -> PENDING_APPROVAL -> APPROVED | REJECTED, with DRAFT and APPROVED
supersedable. REJECTED only leaves through a new submission; SUPERSEDED is
terminal.
"""

from __future__ import annotations

from venue_pricing.domain.models import ApprovalStatus


class ApprovalError(Exception):
    """Base class for ratesheet approval failures."""


class InvalidApprovalTransitionError(ApprovalError):
    """Raised when a ratesheet cannot move to the requested status."""

    def __init__(self, current: ApprovalStatus, target: ApprovalStatus) -> None:
        super().__init__(
            f"cannot transition ratesheet from {current.value} to {target.value}"
        )
        self.current = current
        self.target = target


ALLOWED_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.DRAFT: frozenset(
        {ApprovalStatus.PENDING_APPROVAL, ApprovalStatus.SUPERSEDED}
    ),
    ApprovalStatus.PENDING_APPROVAL: frozenset(
        {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}
    ),
    ApprovalStatus.APPROVED: frozenset({ApprovalStatus.SUPERSEDED}),
    ApprovalStatus.REJECTED: frozenset({ApprovalStatus.PENDING_APPROVAL}),
    ApprovalStatus.SUPERSEDED: frozenset(),
}


def can_transition(current: ApprovalStatus, target: ApprovalStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(current: ApprovalStatus, target: ApprovalStatus) -> ApprovalStatus:
    if not can_transition(current, target):
        raise InvalidApprovalTransitionError(current, target)
    return target


def active_flag_for(status: ApprovalStatus) -> bool:
    """Only approved ratesheets are switched on; every other status is off."""
    return status is ApprovalStatus.APPROVED
