"""Reviewer assignment queue.

Picks tier-1 / tier-2 reviewers least-loaded first (pending = assigned but not
yet scored), breaking ties by the longest time since the reviewer's last
assignment. Claims are a single conditional ``UPDATE ... WHERE reviewerN_id IS
NULL``; the affected row count decides who won, so two workers racing for the
same application can never both succeed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from grantflow.errors import (
    AlreadyClaimed, AlreadyScored, ConflictOfInterest, InvalidInput, InvalidTransition, NoReviewerAvailable,
    NotFoundError, RecordLocked, StaleRecord, WorkflowError,
)
from grantflow.models import Application, DueDiligenceRecord, EligibilityResult, Reviewer, ROLES
from grantflow.outcomes import operation
from grantflow.schemas import Actor
from grantflow.services import ensure_result, find_dd_record, get_application, reload
from grantflow.states import ReviewState, review_state
from grantflow.utils import utc_now

log = logging.getLogger(__name__)

TIER_ROLES = {1: "reviewer_1", 2: "reviewer_2"}
VALIDATOR_ROLES = ("admin", "oversight")
DD_REVIEWER_ROLES = ("admin", "oversight", "technical_reviewer")

_TIER_STATUS = {
    1: ("under_review", ("submitted", "scoring_phase")),
    2: ("pending_senior_review", ("submitted", "scoring_phase", "under_review")),
}


@dataclass(frozen=True)
class Assignment:
    application_id: int
    tier: int
    reviewer_id: str
    assigned_at: datetime


def _tier_columns(tier: int):
    if tier == 1:
        return EligibilityResult.reviewer1_id, EligibilityResult.reviewer1_assigned_at, EligibilityResult.reviewer1_score
    if tier == 2:
        return EligibilityResult.reviewer2_id, EligibilityResult.reviewer2_assigned_at, EligibilityResult.reviewer2_score
    raise InvalidInput("tier", "must be 1 or 2")


# ---------------------------------------------------------------------------
# Queue ordering
# ---------------------------------------------------------------------------


def pending_load(session: Session, tier: int) -> dict[str, int]:
    """Count each reviewer's assigned-but-unscored applications for *tier*."""
    id_col, _, score_col = _tier_columns(tier)
    rows = session.execute(
        select(id_col, func.count())
        .where(id_col.is_not(None), score_col.is_(None))
        .group_by(id_col)
    ).all()
    return {reviewer_id: count for reviewer_id, count in rows}


def _dd_load(session: Session) -> dict[str, int]:
    rows = session.execute(
        select(DueDiligenceRecord.primary_reviewer_id, func.count())
        .where(DueDiligenceRecord.primary_reviewer_id.is_not(None), DueDiligenceRecord.final_verdict.is_(None))
        .group_by(DueDiligenceRecord.primary_reviewer_id)
    ).all()
    return {reviewer_id: count for reviewer_id, count in rows}


def _pool(session: Session, roles: Iterable[str]) -> list[Reviewer]:
    return list(session.execute(
        select(Reviewer)
        .where(Reviewer.is_active.is_(True), Reviewer.role.in_(tuple(roles)))
        .order_by(Reviewer.id)
    ).scalars())


def _queue_order(candidates: list[Reviewer], load: dict[str, int]) -> list[Reviewer]:
    # Never-assigned reviewers sort ahead of everyone with the same load.
    return sorted(
        candidates,
        key=lambda r: (
            load.get(r.reviewer_id, 0),
            r.last_assigned_at is not None,
            r.last_assigned_at or datetime.min,
            r.reviewer_id,
        ),
    )


def pick_reviewer(
    session: Session,
    application_id: int,
    tier: int,
    exclude: Iterable[str] = (),
) -> Reviewer | None:
    """Choose the next tier reviewer for an application, or ``None`` if the pool is empty."""
    _tier_columns(tier)
    excluded = set(exclude)
    result = session.execute(
        select(EligibilityResult).where(EligibilityResult.application_id == application_id)
    ).scalars().first()
    if result is not None:
        opposite = result.reviewer2_id if tier == 1 else result.reviewer1_id
        if opposite:
            excluded.add(opposite)
    candidates = [r for r in _pool(session, (TIER_ROLES[tier],)) if r.reviewer_id not in excluded]
    ordered = _queue_order(candidates, pending_load(session, tier))
    return ordered[0] if ordered else None


def pick_dd_reviewer(session: Session, exclude: Iterable[str] = ()) -> Reviewer | None:
    excluded = set(exclude)
    candidates = [r for r in _pool(session, DD_REVIEWER_ROLES) if r.reviewer_id not in excluded]
    ordered = _queue_order(candidates, _dd_load(session))
    return ordered[0] if ordered else None


def available_validators(session: Session, application_id: int) -> list[Reviewer]:
    record = find_dd_record(session, application_id)
    primary = record.primary_reviewer_id if record is not None else None
    return [r for r in _pool(session, VALIDATOR_ROLES) if r.reviewer_id != primary]


def touch_reviewer(session: Session, reviewer_id: str, at: datetime) -> None:
    reviewer = session.execute(
        select(Reviewer).where(Reviewer.reviewer_id == reviewer_id)
    ).scalars().first()
    if reviewer is not None:
        reviewer.last_assigned_at = at


# ---------------------------------------------------------------------------
# Compare-and-set claim
# ---------------------------------------------------------------------------


def _claim_failure(result: EligibilityResult, reviewer_id: str, tier: int) -> WorkflowError:
    holder = getattr(result, f"reviewer{tier}_id")
    opposite = getattr(result, f"reviewer{3 - tier}_id")
    if result.is_locked:
        return RecordLocked(result.locked_by, result.locked_at, result.lock_reason)
    if getattr(result, f"reviewer{tier}_score") is not None:
        return AlreadyScored(tier)
    if holder is not None:
        return AlreadyClaimed(f"reviewer{tier}_id", holder)
    if opposite == reviewer_id:
        return ConflictOfInterest(reviewer_id, f"already the tier-{3 - tier} reviewer on this application")
    if tier == 2 and result.reviewer1_score is None:
        return InvalidTransition(
            review_state(result).value, ReviewState.R2_ASSIGNED.value, "reviewer 1 has not scored yet",
        )
    return StaleRecord("EligibilityResult", result.id, "claim condition no longer holds")


def claim_tier(session: Session, application: Application, reviewer_id: str, tier: int) -> Assignment:
    """Atomically assign *reviewer_id* to *tier* (caller must commit)."""
    id_col, at_col, score_col = _tier_columns(tier)
    opposite_col = _tier_columns(3 - tier)[0]
    result = ensure_result(session, application)
    conditions = [
        EligibilityResult.id == result.id,
        EligibilityResult.is_locked.is_(False),
        id_col.is_(None),
        score_col.is_(None),
        or_(opposite_col.is_(None), opposite_col != reviewer_id),
    ]
    if tier == 2:
        conditions.append(EligibilityResult.reviewer1_score.is_not(None))

    now = utc_now()
    claimed = session.execute(
        update(EligibilityResult)
        .where(*conditions)
        .values({id_col: reviewer_id, at_col: now})
        .execution_options(synchronize_session=False)
    ).rowcount
    result = reload(session, EligibilityResult, result.id)
    if claimed != 1:
        raise _claim_failure(result, reviewer_id, tier)

    touch_reviewer(session, reviewer_id, now)
    new_status, from_statuses = _TIER_STATUS[tier]
    if application.status in from_statuses:
        application.status = new_status
    session.flush()
    log.info("Application %s: tier-%d reviewer %s assigned", application.id, tier, reviewer_id)
    return Assignment(application_id=application.id, tier=tier, reviewer_id=reviewer_id, assigned_at=now)


def _assign_batch(session: Session, applications: list[Application], tier: int) -> dict:
    assigned: list[dict] = []
    skipped: list[dict] = []
    for application in applications:
        reviewer = pick_reviewer(session, application.id, tier)
        if reviewer is None:
            skipped.append({"application_id": application.id, "reason": "no reviewer available"})
            continue
        try:
            with session.begin_nested():
                assignment = claim_tier(session, application, reviewer.reviewer_id, tier)
        except WorkflowError as exc:
            skipped.append({"application_id": application.id, "reason": exc.message})
            continue
        assigned.append({"application_id": application.id, "reviewer_id": assignment.reviewer_id})
    return {"tier": tier, "assigned": assigned, "skipped": skipped}


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@operation
def claim(session: Session, actor: Actor, application_id: int, tier: int) -> Assignment:
    """Self-service claim by a tier reviewer."""
    _tier_columns(tier)
    actor.require(TIER_ROLES[tier], action=f"claim tier-{tier} reviews")
    application = get_application(session, application_id)
    return claim_tier(session, application, actor.actor_id, tier)


@operation
def auto_assign(session: Session, actor: Actor, application_id: int, tier: int) -> Assignment:
    actor.require("admin", action="assign reviewers")
    application = get_application(session, application_id)
    reviewer = pick_reviewer(session, application_id, tier)
    if reviewer is None:
        raise NoReviewerAvailable(TIER_ROLES[tier], application_id)
    return claim_tier(session, application, reviewer.reviewer_id, tier)


@operation
def bulk_assign(session: Session, actor: Actor, tier: int) -> dict:
    """Assign every waiting application for *tier*. Observation-only applications are left out."""
    actor.require("admin", action="bulk-assign reviewers")
    id_col, _, _ = _tier_columns(tier)
    stmt = (
        select(Application)
        .outerjoin(EligibilityResult, EligibilityResult.application_id == Application.id)
        .where(Application.is_observation_only.is_(False))
        .order_by(Application.submitted_at, Application.id)
    )
    if tier == 1:
        stmt = stmt.where(
            Application.status == "scoring_phase",
            or_(EligibilityResult.id.is_(None), id_col.is_(None)),
        )
    else:
        stmt = stmt.where(
            EligibilityResult.reviewer1_score.is_not(None),
            id_col.is_(None),
            EligibilityResult.is_locked.is_(False),
        )
    applications = list(session.execute(stmt).scalars())
    summary = _assign_batch(session, applications, tier)
    log.info("Bulk tier-%d assignment: %d assigned, %d skipped", tier, len(summary["assigned"]), len(summary["skipped"]))
    return summary


@operation
def redistribute(session: Session, actor: Actor, tier: int) -> dict:
    """Clear pending (unscored) tier assignments and hand them out again evenly."""
    actor.require("admin", action="redistribute reviews")
    id_col, at_col, score_col = _tier_columns(tier)
    pending = session.execute(
        select(EligibilityResult.id, EligibilityResult.application_id)
        .join(Application, Application.id == EligibilityResult.application_id)
        .where(
            id_col.is_not(None),
            score_col.is_(None),
            EligibilityResult.is_locked.is_(False),
            Application.is_observation_only.is_(False),
        )
    ).all()
    if not pending:
        return {"tier": tier, "cleared": 0, "assigned": [], "skipped": []}

    result_ids = [row.id for row in pending]
    cleared = session.execute(
        update(EligibilityResult)
        .where(EligibilityResult.id.in_(result_ids), score_col.is_(None), EligibilityResult.is_locked.is_(False))
        .values({id_col: None, at_col: None})
        .execution_options(synchronize_session=False)
    ).rowcount
    applications = list(session.execute(
        select(Application)
        .where(Application.id.in_([row.application_id for row in pending]))
        .order_by(Application.id)
        .execution_options(populate_existing=True)
    ).scalars())
    summary = _assign_batch(session, applications, tier)
    summary["cleared"] = cleared
    log.info("Redistributed %d tier-%d assignments", cleared, tier)
    return summary


@operation
def register_reviewer(
    session: Session,
    actor: Actor,
    reviewer_id: str,
    role: str,
    display_name: str = "",
) -> Reviewer:
    actor.require("admin", action="manage the reviewer pool")
    if role not in ROLES or role == "applicant":
        raise InvalidInput("role", f"{role!r} cannot join the reviewer pool")
    reviewer = session.execute(
        select(Reviewer).where(Reviewer.reviewer_id == reviewer_id)
    ).scalars().first()
    if reviewer is None:
        reviewer = Reviewer(reviewer_id=reviewer_id, role=role, display_name=display_name)
        session.add(reviewer)
    else:
        reviewer.role = role
        reviewer.display_name = display_name or reviewer.display_name
        reviewer.is_active = True
    session.flush()
    return reviewer


@operation
def set_reviewer_active(session: Session, actor: Actor, reviewer_id: str, is_active: bool) -> Reviewer:
    actor.require("admin", action="manage the reviewer pool")
    reviewer = session.execute(
        select(Reviewer).where(Reviewer.reviewer_id == reviewer_id)
    ).scalars().first()
    if reviewer is None:
        raise NotFoundError("Reviewer", reviewer_id)
    reviewer.is_active = is_active
    session.flush()
    log.info("Reviewer %s %s", reviewer_id, "activated" if is_active else "deactivated")
    return reviewer


@operation
def get_available_validators(session: Session, application_id: int) -> list[Reviewer]:
    get_application(session, application_id)
    return available_validators(session, application_id)
