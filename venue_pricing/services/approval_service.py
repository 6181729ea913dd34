"""Persisted approval workflow for ratesheets."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from venue_pricing.domain.approval import ApprovalError, active_flag_for, transition
from venue_pricing.domain.models import ApprovalStatus
from venue_pricing.repository.pricing_repository import PricingRepository
from venue_pricing.utils.config import Settings, get_settings
from venue_pricing.utils.logger import get_logger
from venue_pricing.utils.time_utils import utc_now


logger = get_logger(__name__)


class RuleNotFoundError(ApprovalError):
    """Raised when the referenced ratesheet does not exist."""


class ApprovalValidationError(ApprovalError):
    """Raised when an approval action is missing required fields."""


class ApprovalConflictError(ApprovalError):
    """Raised when the ratesheet changed status between read and write."""


@dataclass(frozen=True)
class ApprovalOutcome:
    rule_id: str
    previous_status: ApprovalStatus
    status: ApprovalStatus
    is_active: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.rule_id,
            "previousStatus": self.previous_status.value,
            "approvalStatus": self.status.value,
            "isActive": self.is_active,
        }


class ApprovalService:
    """Applies state machine transitions and records who did what."""

    def __init__(
        self,
        repository: Optional[PricingRepository] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or PricingRepository(self._settings)
        self._clock = clock

    def _current_status(self, rule_id: str) -> ApprovalStatus:
        document = self._repository.get_rule_document(rule_id)
        if document is None:
            raise RuleNotFoundError(f"Ratesheet {rule_id} not found")
        return ApprovalStatus(document.get("approvalStatus", ApprovalStatus.DRAFT.value))

    def _apply(
        self,
        rule_id: str,
        target: ApprovalStatus,
        fields: dict[str, Any],
    ) -> ApprovalOutcome:
        current = self._current_status(rule_id)
        status = transition(current, target)
        is_active = active_flag_for(status)
        modified = self._repository.update_rule_if_status(
            rule_id,
            current,
            {"approvalStatus": status.value, "isActive": is_active, **fields},
        )
        if not modified:
            raise ApprovalConflictError(
                f"Ratesheet {rule_id} is no longer {current.value}; reload and retry"
            )
        logger.info(
            "Ratesheet status changed | ratesheet=%s | from=%s | to=%s",
            rule_id,
            current.value,
            status.value,
        )
        return ApprovalOutcome(
            rule_id=rule_id,
            previous_status=current,
            status=status,
            is_active=is_active,
        )

    def submit(self, rule_id: str, submitted_by: Optional[str] = None) -> ApprovalOutcome:
        fields: dict[str, Any] = {"submittedAt": self._clock()}
        if submitted_by:
            fields["submittedBy"] = submitted_by
        return self._apply(rule_id, ApprovalStatus.PENDING_APPROVAL, fields)

    def approve(self, rule_id: str, approved_by: str) -> ApprovalOutcome:
        if not approved_by or not approved_by.strip():
            raise ApprovalValidationError("approvedBy is required")
        return self._apply(
            rule_id,
            ApprovalStatus.APPROVED,
            {"approvedBy": approved_by.strip(), "approvedAt": self._clock()},
        )

    def reject(self, rule_id: str, rejected_by: str, reason: str) -> ApprovalOutcome:
        if not rejected_by or not rejected_by.strip():
            raise ApprovalValidationError("rejectedBy is required")
        if not reason or not reason.strip():
            raise ApprovalValidationError("rejectionReason is required")
        return self._apply(
            rule_id,
            ApprovalStatus.REJECTED,
            {
                "rejectedBy": rejected_by.strip(),
                "rejectedAt": self._clock(),
                "rejectionReason": reason.strip(),
            },
        )

    def supersede(self, rule_id: str, reason: str) -> ApprovalOutcome:
        return self._apply(
            rule_id,
            ApprovalStatus.SUPERSEDED,
            {"supersededAt": self._clock(), "supersededReason": reason},
        )
