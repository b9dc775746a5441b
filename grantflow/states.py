"""State tables for the two-tier review and the due-diligence workflow.

Review state is never stored; it is derived from the EligibilityResult's
reviewer and lock fields. Due-diligence status is stored on the record and
every change is checked against ``DD_TRANSITIONS``.
"""
from __future__ import annotations

from enum import Enum

from grantflow.errors import InvalidTransition
from grantflow.models import EligibilityResult


class ReviewState(Enum):
    UNASSIGNED = "unassigned"
    R1_ASSIGNED = "r1_assigned"
    R1_SCORED = "r1_scored"
    R2_ASSIGNED = "r2_assigned"
    R2_SCORED = "r2_scored"
    LOCKED = "locked"


# Unlocking is an audited admin action, not a transition.
REVIEW_TRANSITIONS: dict[ReviewState, set[ReviewState]] = {
    ReviewState.UNASSIGNED: {ReviewState.R1_ASSIGNED},
    ReviewState.R1_ASSIGNED: {ReviewState.R1_SCORED},
    ReviewState.R1_SCORED: {ReviewState.R1_SCORED, ReviewState.R2_ASSIGNED},
    ReviewState.R2_ASSIGNED: {ReviewState.R2_SCORED},
    ReviewState.R2_SCORED: {ReviewState.R2_SCORED, ReviewState.LOCKED},
    ReviewState.LOCKED: set(),
}


def review_state(result: EligibilityResult | None) -> ReviewState:
    if result is None:
        return ReviewState.UNASSIGNED
    if result.is_locked:
        return ReviewState.LOCKED
    if result.reviewer2_score is not None:
        return ReviewState.R2_SCORED
    if result.reviewer2_id is not None:
        return ReviewState.R2_ASSIGNED
    if result.reviewer1_score is not None:
        return ReviewState.R1_SCORED
    if result.reviewer1_id is not None:
        return ReviewState.R1_ASSIGNED
    return ReviewState.UNASSIGNED


def ensure_review_transition(current: ReviewState, target: ReviewState, detail: str = "") -> None:
    if target not in REVIEW_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current.value, target.value, detail)


DD_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"in_progress"},
    "in_progress": {"in_progress", "awaiting_approval"},
    "awaiting_approval": {"approved", "queried", "auto_reassigned"},
    "queried": {"in_progress", "awaiting_approval"},
    "auto_reassigned": {"in_progress", "awaiting_approval"},
    # Approval closes a phase; the next phase reopens work.
    "approved": {"in_progress"},
}

# dd_status values from which the primary reviewer may edit items or submit.
DD_WORKING_STATUSES = ("pending", "in_progress", "queried", "auto_reassigned", "approved")


def ensure_dd_transition(current: str, target: str, detail: str = "") -> None:
    if target not in DD_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, target, detail)
