from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from venue_pricing.domain.approval import (
    InvalidApprovalTransitionError,
    active_flag_for,
    can_transition,
    transition,
)
from venue_pricing.domain.models import ApprovalStatus
from venue_pricing.repository.pricing_repository import PricingRepository
from venue_pricing.services.approval_service import (
    ApprovalConflictError,
    ApprovalService,
    ApprovalValidationError,
    RuleNotFoundError,
)
from venue_pricing.utils.config import get_settings


NOW = datetime(2026, 3, 6, 12, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    base = get_settings()
    return replace(base, database_path=tmp_path / filename)


def _build_service(tmp_path, filename: str) -> tuple[ApprovalService, PricingRepository]:
    settings = _build_test_settings(tmp_path, filename)
    repository = PricingRepository(settings)
    repository.initialize_database()
    return ApprovalService(repository=repository, settings=settings, clock=lambda: NOW), repository


def _seed_draft(repository: PricingRepository) -> str:
    return repository.insert_rule(
        {
            "name": "Weekend peak",
            "type": "TIMING_BASED",
            "appliesTo": {"level": "SUBLOCATION", "entityId": "sub-1"},
            "priority": 3500,
            "effectiveFrom": NOW,
            "timeWindows": [{"startTime": "09:00", "endTime": "17:00", "pricePerHour": 200.0}],
            "approvalStatus": "DRAFT",
            "isActive": False,
        }
    )


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (ApprovalStatus.DRAFT, ApprovalStatus.PENDING_APPROVAL, True),
        (ApprovalStatus.DRAFT, ApprovalStatus.APPROVED, False),
        (ApprovalStatus.PENDING_APPROVAL, ApprovalStatus.APPROVED, True),
        (ApprovalStatus.PENDING_APPROVAL, ApprovalStatus.REJECTED, True),
        (ApprovalStatus.REJECTED, ApprovalStatus.PENDING_APPROVAL, True),
        (ApprovalStatus.REJECTED, ApprovalStatus.APPROVED, False),
        (ApprovalStatus.APPROVED, ApprovalStatus.SUPERSEDED, True),
        (ApprovalStatus.SUPERSEDED, ApprovalStatus.APPROVED, False),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_invalid_transition_raises_with_both_states():
    with pytest.raises(InvalidApprovalTransitionError) as exc_info:
        transition(ApprovalStatus.SUPERSEDED, ApprovalStatus.DRAFT)

    assert exc_info.value.current is ApprovalStatus.SUPERSEDED
    assert exc_info.value.target is ApprovalStatus.DRAFT


def test_only_approved_rules_are_active():
    assert active_flag_for(ApprovalStatus.APPROVED) is True
    assert not any(
        active_flag_for(status) for status in ApprovalStatus if status is not ApprovalStatus.APPROVED
    )


def test_submit_then_approve_activates_rule(tmp_path):
    service, repository = _build_service(tmp_path, "approve.db")
    rule_id = _seed_draft(repository)

    submitted = service.submit(rule_id, submitted_by="analyst")
    approved = service.approve(rule_id, approved_by="manager")

    assert submitted.status is ApprovalStatus.PENDING_APPROVAL
    assert submitted.is_active is False
    assert approved.previous_status is ApprovalStatus.PENDING_APPROVAL
    assert approved.to_dict() == {
        "id": rule_id,
        "previousStatus": "PENDING_APPROVAL",
        "approvalStatus": "APPROVED",
        "isActive": True,
    }
    document = repository.get_rule_document(rule_id)
    assert document["approvedBy"] == "manager"
    assert document["submittedBy"] == "analyst"
    assert repository.get_rule(rule_id).is_live is True


def test_reject_records_reason_and_allows_resubmission(tmp_path):
    service, repository = _build_service(tmp_path, "reject.db")
    rule_id = _seed_draft(repository)
    service.submit(rule_id)

    rejected = service.reject(rule_id, rejected_by="manager", reason="Too expensive")
    resubmitted = service.submit(rule_id)

    assert rejected.status is ApprovalStatus.REJECTED
    assert resubmitted.status is ApprovalStatus.PENDING_APPROVAL
    document = repository.get_rule_document(rule_id)
    assert document["rejectionReason"] == "Too expensive"


def test_approval_actions_validate_inputs(tmp_path):
    service, repository = _build_service(tmp_path, "validate.db")
    rule_id = _seed_draft(repository)
    service.submit(rule_id)

    with pytest.raises(ApprovalValidationError):
        service.approve(rule_id, approved_by="  ")
    with pytest.raises(ApprovalValidationError):
        service.reject(rule_id, rejected_by="manager", reason="")
    with pytest.raises(RuleNotFoundError):
        service.submit("missing")


def test_draft_cannot_be_approved_directly(tmp_path):
    service, repository = _build_service(tmp_path, "skip.db")
    rule_id = _seed_draft(repository)

    with pytest.raises(InvalidApprovalTransitionError):
        service.approve(rule_id, approved_by="manager")

    assert repository.get_rule_document(rule_id)["approvalStatus"] == "DRAFT"


def test_supersede_deactivates_approved_rule(tmp_path):
    service, repository = _build_service(tmp_path, "supersede.db")
    rule_id = _seed_draft(repository)
    service.submit(rule_id)
    service.approve(rule_id, approved_by="manager")

    outcome = service.supersede(rule_id, reason="Replaced")

    assert outcome.status is ApprovalStatus.SUPERSEDED
    assert outcome.is_active is False
    with pytest.raises(InvalidApprovalTransitionError):
        service.submit(rule_id)


def test_decision_on_stale_status_does_not_overwrite(tmp_path, monkeypatch):
    service, repository = _build_service(tmp_path, "approval_stale.db")
    rule_id = _seed_draft(repository)
    service.submit(rule_id, "author")
    stale = repository.get_rule_document(rule_id)
    service.approve(rule_id, "lead")

    # A second reviewer read the ratesheet before the approval landed.
    monkeypatch.setattr(repository, "get_rule_document", lambda _rule_id: stale)
    with pytest.raises(ApprovalConflictError):
        service.reject(rule_id, "ops", "Too expensive")
    monkeypatch.undo()

    document = repository.get_rule_document(rule_id)
    assert document["approvalStatus"] == "APPROVED"
    assert document["isActive"] is True
    assert "rejectionReason" not in document
