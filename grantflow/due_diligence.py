"""Due-diligence workflow.

A record is opened for an application that passed tier-2 review (its final
score reached the DD threshold, or oversight recommended it). The primary
reviewer scores every criterion of the current phase (0/1/3/5), submits the
phase with a nominated validator, and the validator approves or queries:

    pending -> in_progress -> awaiting_approval -> approved | queried | auto_reassigned

``queried`` returns the phase to the same primary reviewer. An approval window
that runs out moves the record to ``auto_reassigned`` with a new primary
reviewer from the queue. Approving phase 1 opens phase 2; once phase 2 is
approved (or waived) a human records the final verdict.

Phase totals are recomputed by the database inside the item write's
transaction, so ``phaseN_score`` always equals the sum of that phase's items.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from grantflow.assignment import (
    DD_REVIEWER_ROLES, available_validators, pick_dd_reviewer, touch_reviewer,
)
from grantflow.dd_criteria import ALLOWED_ITEM_SCORES, criteria_for_phase, find_criterion
from grantflow.errors import (
    AlreadyClaimed, AlreadyDecided, ConflictOfInterest, IncompleteScoring, InvalidInput,
    InvalidTransition, MissingJustification, NoReviewerAvailable, NotEligibleForDueDiligence,
    StaleRecord, Unauthorized, UnknownCriterion,
)
from grantflow.models import Application, DueDiligenceItem, DueDiligenceRecord, EligibilityResult
from grantflow.outcomes import operation
from grantflow.schemas import Actor
from grantflow.services import (
    dd_record_summary, find_dd_record, find_result, get_application, get_dd_record, reload,
)
from grantflow.settings import Policy, get_policy
from grantflow.states import DD_WORKING_STATUSES, ensure_dd_transition
from grantflow.utils import append_note, utc_now

log = logging.getLogger(__name__)

DECISION_ROLES = ("admin", "oversight")


def _phase_columns(phase: int):
    if phase == 1:
        return DueDiligenceRecord.phase1_score, DueDiligenceRecord.phase1_status, DueDiligenceRecord.phase1_notes
    if phase == 2:
        return DueDiligenceRecord.phase2_score, DueDiligenceRecord.phase2_status, DueDiligenceRecord.phase2_notes
    raise InvalidInput("phase", "must be 1 or 2")


def _phase_status(record: DueDiligenceRecord, phase: int) -> str:
    return record.phase1_status if phase == 1 else record.phase2_status


def scoring_complete(record: DueDiligenceRecord) -> bool:
    return record.phase1_status == "completed" and record.phase2_status in ("completed", "skipped")


def _require_primary(record: DueDiligenceRecord, actor: Actor, action: str) -> None:
    if record.primary_reviewer_id != actor.actor_id:
        holder = record.primary_reviewer_id or "nobody"
        raise Unauthorized(actor.actor_id, actor.role, f"{action} (primary reviewer is {holder})")


def _require_open_phase(record: DueDiligenceRecord, phase: int) -> None:
    _phase_columns(phase)
    if record.final_verdict is not None:
        raise InvalidTransition(record.dd_status, "in_progress", "final verdict already recorded")
    if phase != record.current_phase:
        raise InvalidTransition(
            f"phase{record.current_phase}", f"phase{phase}", "only the current phase can be worked on",
        )
    status = _phase_status(record, phase)
    if status in ("completed", "skipped"):
        raise InvalidTransition(status, "in_progress", f"phase {phase} is closed")
    if record.dd_status not in DD_WORKING_STATUSES:
        raise InvalidTransition(record.dd_status, "in_progress", "the phase is waiting for its validator")


def _qualifies(result: EligibilityResult | None, record: DueDiligenceRecord | None) -> bool:
    if result is None or result.reviewer2_score is None:
        return False
    return result.qualifies_for_due_diligence or bool(record and record.is_oversight_initiated)


def _get_or_create_record(session: Session, application: Application) -> DueDiligenceRecord:
    record = find_dd_record(session, application.id)
    if record is not None:
        return record
    try:
        with session.begin_nested():
            record = DueDiligenceRecord(application_id=application.id)
            session.add(record)
    except IntegrityError:
        record = get_dd_record(session, application.id)
    return record


def _open(session: Session, application_id: int) -> DueDiligenceRecord:
    application = get_application(session, application_id)
    result = find_result(session, application_id)
    if not _qualifies(result, find_dd_record(session, application_id)):
        raise NotEligibleForDueDiligence(
            application_id, "tier-2 review has not qualified it and oversight has not recommended it",
        )
    return _get_or_create_record(session, application)


def _claim_primary(session: Session, record: DueDiligenceRecord, reviewer_id: str) -> DueDiligenceRecord:
    now = utc_now()
    claimed = session.execute(
        update(DueDiligenceRecord)
        .where(DueDiligenceRecord.id == record.id, DueDiligenceRecord.primary_reviewer_id.is_(None))
        .values(primary_reviewer_id=reviewer_id, primary_assigned_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    record = reload(session, DueDiligenceRecord, record.id)
    if claimed != 1:
        raise AlreadyClaimed("primary_reviewer_id", record.primary_reviewer_id)
    touch_reviewer(session, reviewer_id, now)
    session.flush()
    log.info("DD record for application %s claimed by %s", record.application_id, reviewer_id)
    return record


# ---------------------------------------------------------------------------
# Opening and claiming
# ---------------------------------------------------------------------------


@operation
def open_record(session: Session, actor: Actor, application_id: int) -> DueDiligenceRecord:
    actor.require(*DD_REVIEWER_ROLES, action="open due-diligence records")
    return _open(session, application_id)


@operation
def claim(session: Session, actor: Actor, application_id: int) -> DueDiligenceRecord:
    actor.require(*DD_REVIEWER_ROLES, action="claim due-diligence records")
    record = _open(session, application_id)
    return _claim_primary(session, record, actor.actor_id)


@operation
def assign_primary_reviewer(session: Session, actor: Actor, application_id: int) -> DueDiligenceRecord:
    """Automated claim: hand the record to the least-loaded DD reviewer."""
    actor.require("admin", action="assign due-diligence reviewers")
    record = _open(session, application_id)
    reviewer = pick_dd_reviewer(session)
    if reviewer is None:
        raise NoReviewerAvailable("due-diligence", application_id)
    return _claim_primary(session, record, reviewer.reviewer_id)


# ---------------------------------------------------------------------------
# Item scoring
# ---------------------------------------------------------------------------


def _recompute_phase_total(session: Session, record: DueDiligenceRecord, phase: int) -> None:
    score_col, _, _ = _phase_columns(phase)
    total = (
        select(func.coalesce(func.sum(DueDiligenceItem.score), 0))
        .where(DueDiligenceItem.record_id == record.id, DueDiligenceItem.phase == phase)
        .scalar_subquery()
    )
    session.execute(
        update(DueDiligenceRecord)
        .where(DueDiligenceRecord.id == record.id)
        .values({score_col: total})
        .execution_options(synchronize_session=False)
    )


def _upsert_item(
    session: Session,
    record: DueDiligenceRecord,
    phase: int,
    category: str,
    criterion: str,
    score: int,
    comments: str,
    actor_id: str,
) -> DueDiligenceItem:
    lookup = select(DueDiligenceItem).where(
        DueDiligenceItem.record_id == record.id,
        DueDiligenceItem.phase == phase,
        DueDiligenceItem.criterion == criterion,
    )
    item = session.execute(lookup).scalars().first()
    if item is None:
        try:
            with session.begin_nested():
                item = DueDiligenceItem(
                    record_id=record.id, phase=phase, category=category, criterion=criterion,
                    score=score, comments=comments, updated_by=actor_id,
                )
                session.add(item)
            return item
        except IntegrityError:
            item = session.execute(lookup).scalars().one()
    item.score = score
    item.comments = comments
    item.updated_by = actor_id
    session.flush()
    return item


@operation
def save_item(
    session: Session,
    actor: Actor,
    application_id: int,
    phase: int,
    criterion: str,
    score: int,
    comments: str = "",
    policy: Policy | None = None,
) -> DueDiligenceRecord:
    policy = policy or get_policy()
    record = get_dd_record(session, application_id)
    _require_primary(record, actor, "score due-diligence criteria")
    _require_open_phase(record, phase)
    if score not in ALLOWED_ITEM_SCORES:
        raise InvalidInput("score", f"must be one of {', '.join(map(str, ALLOWED_ITEM_SCORES))}")
    spec = find_criterion(policy.dd_criteria, phase, criterion)
    if spec is None:
        raise UnknownCriterion(phase, criterion)

    if record.dd_status != "in_progress":
        ensure_dd_transition(record.dd_status, "in_progress")
        record.dd_status = "in_progress"
    _, status_col, _ = _phase_columns(phase)
    setattr(record, status_col.key, "in_progress")
    session.flush()

    _upsert_item(session, record, phase, spec.category, spec.name, score, comments, actor.actor_id)
    _recompute_phase_total(session, record, phase)
    session.expire(record, ["items"])
    record = reload(session, DueDiligenceRecord, record.id)
    log.debug("DD application %s phase %d: %s = %d", application_id, phase, criterion, score)
    return record


# ---------------------------------------------------------------------------
# Primary review and validation loop
# ---------------------------------------------------------------------------


@operation
def submit_primary_review(
    session: Session,
    actor: Actor,
    application_id: int,
    phase: int,
    final_score: float | None = None,
    notes: str = "",
    validator_id: str | None = None,
    policy: Policy | None = None,
) -> DueDiligenceRecord:
    policy = policy or get_policy()
    record = get_dd_record(session, application_id)
    _require_primary(record, actor, "submit the primary review")
    _require_open_phase(record, phase)

    scored = set(session.execute(
        select(DueDiligenceItem.criterion).where(
            DueDiligenceItem.record_id == record.id, DueDiligenceItem.phase == phase,
        )
    ).scalars())
    missing = [c.name for c in criteria_for_phase(policy.dd_criteria, phase) if c.name not in scored]
    if missing:
        raise IncompleteScoring(phase, missing)

    result = find_result(session, application_id)
    prefilled = result.total_score if result is not None else None
    if final_score is None:
        final_score = prefilled
    elif prefilled is None or abs(final_score - prefilled) > 1e-9:
        if len(notes.strip()) < policy.min_reason_length:
            raise MissingJustification("final_score", policy.min_reason_length)

    if not validator_id:
        raise InvalidInput("validator_id", "a validator must be nominated")
    if validator_id == actor.actor_id:
        raise ConflictOfInterest(actor.actor_id, "a primary reviewer cannot validate their own work")
    if validator_id not in {v.reviewer_id for v in available_validators(session, application_id)}:
        raise InvalidInput("validator_id", f"{validator_id} is not in the validator pool")
    ensure_dd_transition(record.dd_status, "awaiting_approval")

    now = utc_now()
    _, status_col, notes_col = _phase_columns(phase)
    submitted = session.execute(
        update(DueDiligenceRecord)
        .where(
            DueDiligenceRecord.id == record.id,
            DueDiligenceRecord.primary_reviewer_id == actor.actor_id,
            DueDiligenceRecord.dd_status == record.dd_status,
        )
        .values({
            DueDiligenceRecord.dd_status: "awaiting_approval",
            DueDiligenceRecord.primary_reviewed_at: now,
            DueDiligenceRecord.primary_final_score: final_score,
            DueDiligenceRecord.validator_reviewer_id: validator_id,
            DueDiligenceRecord.validator_action: None,
            DueDiligenceRecord.validator_action_at: None,
            DueDiligenceRecord.approval_deadline: now + timedelta(hours=policy.approval_window_hours),
            status_col: "submitted",
            notes_col: notes,
        })
        .execution_options(synchronize_session=False)
    ).rowcount
    record = reload(session, DueDiligenceRecord, record.id)
    if submitted != 1:
        raise StaleRecord("DueDiligenceRecord", record.id, "record changed during submission")
    log.info(
        "DD application %s phase %d submitted by %s, validator %s",
        application_id, phase, actor.actor_id, validator_id,
    )
    return record


@operation
def validator_decision(
    session: Session,
    actor: Actor,
    application_id: int,
    action: str,
    comments: str = "",
) -> DueDiligenceRecord:
    """Validator approves the submitted phase or queries it back to the primary reviewer."""
    if action not in ("approve", "query"):
        raise InvalidInput("action", "must be 'approve' or 'query'")
    record = get_dd_record(session, application_id)
    if record.validator_reviewer_id != actor.actor_id:
        raise Unauthorized(actor.actor_id, actor.role, "validate this record (not the nominated validator)")
    if action == "query" and not comments.strip():
        raise MissingJustification("comments", 1)
    target = "approved" if action == "approve" else "queried"
    ensure_dd_transition(record.dd_status, target)

    phase = record.current_phase
    _, status_col, _ = _phase_columns(phase)
    values: dict[Any, Any] = {
        DueDiligenceRecord.dd_status: target,
        DueDiligenceRecord.validator_action: target,
        DueDiligenceRecord.validator_comments: comments.strip(),
        DueDiligenceRecord.validator_action_at: utc_now(),
        DueDiligenceRecord.approval_deadline: None,
        status_col: "completed" if action == "approve" else "in_progress",
    }
    if action == "approve" and phase == 1 and record.phase2_status != "skipped":
        values[DueDiligenceRecord.current_phase] = 2
    decided = session.execute(
        update(DueDiligenceRecord)
        .where(
            DueDiligenceRecord.id == record.id,
            DueDiligenceRecord.dd_status == "awaiting_approval",
            DueDiligenceRecord.validator_reviewer_id == actor.actor_id,
        )
        .values(values)
        .execution_options(synchronize_session=False)
    ).rowcount
    record = reload(session, DueDiligenceRecord, record.id)
    if decided != 1:
        raise StaleRecord("DueDiligenceRecord", record.id, "record is no longer awaiting this validator")
    log.info("DD application %s phase %d %s by %s", application_id, phase, target, actor.actor_id)
    return record


@operation
def check_approval_deadlines(session: Session, actor: Actor, now: datetime | None = None) -> dict:
    """Reassign records whose approval window ran out to a new primary reviewer."""
    actor.require("admin", action="run deadline checks")
    now = now or utc_now()
    expired = list(session.execute(
        select(DueDiligenceRecord)
        .where(
            DueDiligenceRecord.dd_status == "awaiting_approval",
            DueDiligenceRecord.approval_deadline.is_not(None),
            DueDiligenceRecord.approval_deadline <= now,
        )
        .order_by(DueDiligenceRecord.approval_deadline)
    ).scalars())

    reassigned: list[dict] = []
    for record in expired:
        previous = record.primary_reviewer_id
        exclude = {r for r in (previous, record.validator_reviewer_id) if r}
        reviewer = pick_dd_reviewer(session, exclude=exclude)
        new_primary = reviewer.reviewer_id if reviewer is not None else None
        _, status_col, _ = _phase_columns(record.current_phase)
        moved = session.execute(
            update(DueDiligenceRecord)
            .where(
                DueDiligenceRecord.id == record.id,
                DueDiligenceRecord.dd_status == "awaiting_approval",
                DueDiligenceRecord.approval_deadline == record.approval_deadline,
            )
            .values({
                DueDiligenceRecord.dd_status: "auto_reassigned",
                DueDiligenceRecord.primary_reviewer_id: new_primary,
                DueDiligenceRecord.primary_assigned_at: now if new_primary else None,
                DueDiligenceRecord.validator_reviewer_id: None,
                DueDiligenceRecord.approval_deadline: None,
                status_col: "in_progress",
            })
            .execution_options(synchronize_session=False)
        ).rowcount
        if moved != 1:
            continue
        reload(session, DueDiligenceRecord, record.id)
        if new_primary:
            touch_reviewer(session, new_primary, now)
        log.warning(
            "DD application %s: approval deadline passed, primary %s -> %s",
            record.application_id, previous, new_primary or "unassigned",
        )
        reassigned.append({
            "application_id": record.application_id,
            "previous_primary": previous,
            "new_primary": new_primary,
        })
    session.flush()
    return {"checked_at": now.isoformat(), "expired": len(expired), "reassigned": reassigned}


@operation
def skip_phase2(session: Session, actor: Actor, application_id: int, reason: str, policy: Policy | None = None):
    """Waive the physical verification phase after phase 1 is approved."""
    actor.require(*DECISION_ROLES, action="waive due-diligence phase 2")
    policy = policy or get_policy()
    if len(reason.strip()) < policy.min_reason_length:
        raise MissingJustification("reason", policy.min_reason_length)
    record = get_dd_record(session, application_id)
    if record.phase1_status != "completed":
        raise InvalidTransition(record.phase1_status, "skipped", "phase 1 must be approved first")
    if record.phase2_status in ("submitted", "completed", "skipped"):
        raise InvalidTransition(record.phase2_status, "skipped", "phase 2 can no longer be waived")
    record.phase2_status = "skipped"
    record.phase2_notes = append_note(record.phase2_notes, f"[SKIPPED] by {actor.actor_id}: {reason.strip()}")
    session.flush()
    log.info("DD application %s: phase 2 waived by %s", application_id, actor.actor_id)
    return record


# ---------------------------------------------------------------------------
# Oversight and final verdict
# ---------------------------------------------------------------------------


@operation
def recommend_for_due_diligence(
    session: Session,
    actor: Actor,
    application_id: int,
    justification: str,
    policy: Policy | None = None,
) -> DueDiligenceRecord:
    """Oversight flag that sends a reviewed application to DD regardless of its score."""
    actor.require("oversight", action="recommend applications for due diligence")
    policy = policy or get_policy()
    if len(justification.strip()) < policy.min_oversight_justification:
        raise MissingJustification("justification", policy.min_oversight_justification)
    application = get_application(session, application_id)
    result = find_result(session, application_id)
    if result is None or result.reviewer2_score is None:
        raise NotEligibleForDueDiligence(application_id, "tier-2 review is not complete")
    record = _get_or_create_record(session, application)
    now = utc_now()
    record.is_oversight_initiated = True
    record.oversight_justification = justification.strip()
    record.oversight_admin_id = actor.actor_id
    record.oversight_flagged_at = now
    result.evaluation_notes = append_note(
        result.evaluation_notes, f"[OVERSIGHT] Recommended for due diligence by {actor.actor_id}", at=now,
    )
    session.flush()
    log.info("Application %s recommended for due diligence by %s", application_id, actor.actor_id)
    return record


@operation
def save_final_decision(
    session: Session,
    actor: Actor,
    application_id: int,
    verdict: str,
    reason: str,
    policy: Policy | None = None,
) -> DueDiligenceRecord:
    actor.require(*DECISION_ROLES, action="record the due-diligence verdict")
    policy = policy or get_policy()
    if verdict not in ("pass", "fail"):
        raise InvalidInput("verdict", "must be 'pass' or 'fail'")
    if len(reason.strip()) < policy.min_reason_length:
        raise MissingJustification("reason", policy.min_reason_length)
    record = get_dd_record(session, application_id)
    if record.final_verdict is not None:
        raise AlreadyDecided(record.final_verdict, record.final_decided_by)
    if not scoring_complete(record):
        raise InvalidTransition(
            f"phase1={record.phase1_status}, phase2={record.phase2_status}", "final_verdict",
            "due-diligence scoring is not complete",
        )
    decided = session.execute(
        update(DueDiligenceRecord)
        .where(DueDiligenceRecord.id == record.id, DueDiligenceRecord.final_verdict.is_(None))
        .values(
            final_verdict=verdict,
            final_reason=reason.strip(),
            final_decided_by=actor.actor_id,
            final_decided_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    record = reload(session, DueDiligenceRecord, record.id)
    if decided != 1:
        raise AlreadyDecided(record.final_verdict or "", record.final_decided_by)
    if verdict == "pass":
        application = get_application(session, application_id)
        application.status = "finalist"
    session.flush()
    log.info("DD application %s: final verdict %s by %s", application_id, verdict, actor.actor_id)
    return record


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@operation
def dd_queue(session: Session) -> list[dict[str, Any]]:
    """Applications eligible for due diligence, with their DD state if opened."""
    rows = session.execute(
        select(EligibilityResult, DueDiligenceRecord)
        .outerjoin(DueDiligenceRecord, DueDiligenceRecord.application_id == EligibilityResult.application_id)
        .where(
            EligibilityResult.reviewer2_score.is_not(None),
            or_(
                EligibilityResult.qualifies_for_due_diligence.is_(True),
                and_(DueDiligenceRecord.id.is_not(None), DueDiligenceRecord.is_oversight_initiated.is_(True)),
            ),
        )
        .order_by(EligibilityResult.total_score.desc(), EligibilityResult.application_id)
    ).all()
    queue: list[dict[str, Any]] = []
    for result, record in rows:
        entry: dict[str, Any] = {
            "application_id": result.application_id,
            "total_score": result.total_score,
            "reviewer1_score": result.reviewer1_score,
            "reviewer2_score": result.reviewer2_score,
            "score_disparity": result.score_disparity,
            "oversight_recommended": bool(record and record.is_oversight_initiated),
        }
        entry["due_diligence"] = dd_record_summary(record, include_items=False) if record else None
        queue.append(entry)
    return queue
