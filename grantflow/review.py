"""Two-tier review state machine.

    unassigned -> r1_assigned -> r1_scored -> r2_assigned -> r2_scored -> locked

Reviewer 1 scoring only unblocks tier-2 assignment. Reviewer 2's submission
finalises the result: with explicit override intent and a score differing from
reviewer 1's by more than the policy delta, reviewer 2's score becomes the final
total outright; otherwise the two scores are averaged. The result then locks and
the application is approved or rejected against the pass threshold.

Every reviewer write is a conditional UPDATE that also requires
``is_locked = false``, so a locked result rejects writes structurally. Only
:func:`unlock_application` (admin, audited) reopens it.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from grantflow.assignment import TIER_ROLES, Assignment, claim_tier, pick_reviewer
from grantflow.configuration import get_active_configuration
from grantflow.errors import (
    AlreadyScored, InvalidInput, InvalidTransition, NoActiveConfiguration, NoReviewerAvailable,
    NotFoundError, RecordLocked, StaleRecord, Unauthorized, WorkflowError,
)
from grantflow.models import EligibilityResult, Reviewer, ScoringConfiguration
from grantflow.outcomes import operation
from grantflow.schemas import Actor
from grantflow.services import ensure_result, get_application, get_result, reload, result_summary
from grantflow.settings import Policy, get_policy
from grantflow.states import ReviewState, ensure_review_transition, review_state
from grantflow.utils import append_note, utc_now

log = logging.getLogger(__name__)

LOCK_ADMIN_ROLES = ("admin",)
FULL_VIEW_ROLES = ("admin", "oversight")


def _validate_score(score: float) -> None:
    if not 0 <= score <= 100:
        raise InvalidInput("score", "must be between 0 and 100")


def pass_threshold_for(session: Session, result: EligibilityResult) -> float:
    """Threshold of the configuration the result was scored with, else the active one."""
    if result.scoring_config_id is not None:
        config = session.get(ScoringConfiguration, result.scoring_config_id)
        if config is not None:
            return config.pass_threshold
    active = get_active_configuration(session)
    if active is None:
        raise NoActiveConfiguration()
    return active.pass_threshold


def _write_failure(result: EligibilityResult, actor: Actor, tier: int) -> WorkflowError:
    if result.is_locked:
        return RecordLocked(result.locked_by, result.locked_at, result.lock_reason)
    holder = getattr(result, f"reviewer{tier}_id")
    state = review_state(result)
    if holder is None:
        return InvalidTransition(state.value, f"r{tier}_scored", f"no tier-{tier} reviewer is assigned")
    if holder != actor.actor_id:
        return Unauthorized(actor.actor_id, actor.role, f"score tier {tier} (assigned to {holder})")
    if tier == 1 and result.reviewer2_score is not None:
        return AlreadyScored(2)
    if tier == 1 and result.reviewer2_id is not None:
        return InvalidTransition(state.value, "r1_scored", "tier-2 review has already started")
    if tier == 2 and result.reviewer1_score is None:
        return InvalidTransition(state.value, "r2_scored", "reviewer 1 has not scored yet")
    return StaleRecord("EligibilityResult", result.id, "review changed while scoring")


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


@operation
def assign_reviewer(
    session: Session,
    actor: Actor,
    application_id: int,
    tier: int,
    reviewer_id: str | None = None,
) -> Assignment:
    """Admin assignment of a tier reviewer, explicit or taken from the queue."""
    actor.require("admin", action="assign reviewers")
    if tier not in TIER_ROLES:
        raise InvalidInput("tier", "must be 1 or 2")
    application = get_application(session, application_id)
    if reviewer_id is None:
        reviewer = pick_reviewer(session, application_id, tier)
        if reviewer is None:
            raise NoReviewerAvailable(TIER_ROLES[tier], application_id)
    else:
        reviewer = session.execute(
            select(Reviewer).where(Reviewer.reviewer_id == reviewer_id)
        ).scalars().first()
        if reviewer is None:
            raise NotFoundError("Reviewer", reviewer_id)
        if reviewer.role != TIER_ROLES[tier] or not reviewer.is_active:
            raise InvalidInput("reviewer_id", f"{reviewer_id} is not an active {TIER_ROLES[tier]} reviewer")
    return claim_tier(session, application, reviewer.reviewer_id, tier)


def assign_reviewer1(session: Session, actor: Actor, application_id: int, reviewer_id: str | None = None):
    return assign_reviewer(session, actor, application_id, 1, reviewer_id)


def assign_reviewer2(session: Session, actor: Actor, application_id: int, reviewer_id: str | None = None):
    return assign_reviewer(session, actor, application_id, 2, reviewer_id)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


@operation
def submit_reviewer1_score(
    session: Session,
    actor: Actor,
    application_id: int,
    score: float,
    notes: str = "",
) -> EligibilityResult:
    actor.require(TIER_ROLES[1], action="submit tier-1 scores")
    _validate_score(score)
    result = get_result(session, application_id)
    if result.is_locked:
        raise RecordLocked(result.locked_by, result.locked_at, result.lock_reason)
    ensure_review_transition(review_state(result), ReviewState.R1_SCORED)

    written = session.execute(
        update(EligibilityResult)
        .where(
            EligibilityResult.id == result.id,
            EligibilityResult.is_locked.is_(False),
            EligibilityResult.reviewer1_id == actor.actor_id,
            EligibilityResult.reviewer2_id.is_(None),
            EligibilityResult.reviewer2_score.is_(None),
        )
        .values(reviewer1_score=score, reviewer1_notes=notes, reviewer1_scored_at=utc_now())
        .execution_options(synchronize_session=False)
    ).rowcount
    result = reload(session, EligibilityResult, result.id)
    if written != 1:
        raise _write_failure(result, actor, 1)
    log.info("Application %s: reviewer 1 (%s) scored %.1f", application_id, actor.actor_id, score)
    return result


@operation
def submit_reviewer2_score(
    session: Session,
    actor: Actor,
    application_id: int,
    score: float,
    notes: str = "",
    override: bool = False,
    policy: Policy | None = None,
) -> EligibilityResult:
    actor.require(TIER_ROLES[2], action="submit tier-2 scores")
    _validate_score(score)
    policy = policy or get_policy()
    application = get_application(session, application_id)
    result = get_result(session, application_id)
    if result.is_locked:
        raise RecordLocked(result.locked_by, result.locked_at, result.lock_reason)
    ensure_review_transition(review_state(result), ReviewState.R2_SCORED)
    if result.reviewer1_score is None:
        raise InvalidTransition(review_state(result).value, "r2_scored", "reviewer 1 has not scored yet")

    r1 = result.reviewer1_score
    disparity = round(abs(score - r1), 2)
    overrode = override and disparity > policy.override_delta
    final = score if overrode else round((r1 + score) / 2, 2)
    threshold = pass_threshold_for(session, result)
    passed = final >= threshold
    now = utc_now()

    # One statement: reviewer-2 fields, final totals and the lock. Pinning
    # reviewer1_score means a concurrent tier-1 amendment makes this fail.
    written = session.execute(
        update(EligibilityResult)
        .where(
            EligibilityResult.id == result.id,
            EligibilityResult.is_locked.is_(False),
            EligibilityResult.reviewer2_id == actor.actor_id,
            EligibilityResult.reviewer1_score == r1,
        )
        .values(
            reviewer2_score=score,
            reviewer2_notes=notes,
            reviewer2_scored_at=now,
            reviewer2_overrode_reviewer1=overrode,
            total_score=final,
            is_eligible=passed,
            score_disparity=disparity,
            qualifies_for_due_diligence=passed and final >= policy.dd_threshold,
            is_locked=True,
            locked_by=actor.actor_id,
            locked_at=now,
            lock_reason="Two-tier review complete",
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    result = reload(session, EligibilityResult, result.id)
    if written != 1:
        raise _write_failure(result, actor, 2)

    note = f"[REVIEW] Final score {final:.1f} ({'reviewer 2 override' if overrode else 'average of both reviewers'})"
    if disparity > policy.score_disparity_threshold:
        note = f"{note}; score disparity {disparity:.1f} exceeds {policy.score_disparity_threshold:.1f}"
        log.warning("Application %s: reviewer disparity %.1f", application_id, disparity)
    result.evaluation_notes = append_note(result.evaluation_notes, note, at=now)
    application.status = "approved" if passed else "rejected"
    session.flush()
    log.info(
        "Application %s: reviewer 2 (%s) scored %.1f, final %.1f -> %s",
        application_id, actor.actor_id, score, final, application.status,
    )
    return result


# ---------------------------------------------------------------------------
# Lock / unlock
# ---------------------------------------------------------------------------


@operation
def lock_application(session: Session, actor: Actor, application_id: int, reason: str = "") -> EligibilityResult:
    actor.require(*LOCK_ADMIN_ROLES, action="lock reviews")
    application = get_application(session, application_id)
    result = ensure_result(session, application)
    now = utc_now()
    reason = reason.strip() or "Locked by admin"
    written = session.execute(
        update(EligibilityResult)
        .where(EligibilityResult.id == result.id, EligibilityResult.is_locked.is_(False))
        .values(is_locked=True, locked_by=actor.actor_id, locked_at=now, lock_reason=reason)
        .execution_options(synchronize_session=False)
    ).rowcount
    result = reload(session, EligibilityResult, result.id)
    if written != 1:
        raise RecordLocked(result.locked_by, result.locked_at, result.lock_reason)
    result.evaluation_notes = append_note(result.evaluation_notes, f"[LOCK] by {actor.actor_id}: {reason}", at=now)
    session.flush()
    log.info("Application %s locked by %s", application_id, actor.actor_id)
    return result


@operation
def unlock_application(session: Session, actor: Actor, application_id: int, reason: str) -> EligibilityResult:
    actor.require(*LOCK_ADMIN_ROLES, action="unlock reviews")
    if not reason.strip():
        raise InvalidInput("reason", "unlocking requires a reason")
    result = get_result(session, application_id)
    now = utc_now()
    written = session.execute(
        update(EligibilityResult)
        .where(EligibilityResult.id == result.id, EligibilityResult.is_locked.is_(True))
        .values(is_locked=False, locked_by=None, locked_at=None, lock_reason=f"Unlocked by admin: {reason.strip()}")
        .execution_options(synchronize_session=False)
    ).rowcount
    result = reload(session, EligibilityResult, result.id)
    if written != 1:
        raise InvalidTransition(review_state(result).value, "unlocked", "record is not locked")
    result.evaluation_notes = append_note(
        result.evaluation_notes, f"[UNLOCK] by {actor.actor_id}: {reason.strip()}", at=now,
    )
    session.flush()
    log.warning("Application %s unlocked by %s: %s", application_id, actor.actor_id, reason.strip())
    return result


# ---------------------------------------------------------------------------
# Blind status view
# ---------------------------------------------------------------------------


@operation
def get_review_status(session: Session, viewer: Actor, application_id: int) -> dict[str, Any]:
    """Review status with the other reviewer's score hidden until both have scored."""
    application = get_application(session, application_id)
    result = get_result(session, application_id)
    both_done = result.reviewer1_score is not None and result.reviewer2_score is not None
    hide: tuple[int, ...] = ()
    if viewer.role not in FULL_VIEW_ROLES and not both_done:
        if viewer.actor_id == result.reviewer1_id:
            hide = (2,)
        elif viewer.actor_id == result.reviewer2_id:
            hide = (1,)
        else:
            hide = (1, 2)
    data = result_summary(result, hide_tiers=hide)
    data["state"] = review_state(result).value
    data["application_status"] = application.status
    return data
