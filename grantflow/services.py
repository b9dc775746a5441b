"""Shared lookups and serialisation helpers for grantflow operations, API and CLI."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from grantflow.errors import NotFoundError
from grantflow.models import (
    Application, DueDiligenceRecord, EligibilityResult, Reviewer, ScoringConfiguration,
)
from grantflow.utils import isoformat, json_parse

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

MANDATORY_FIELDS = (
    "age_eligible", "registration_eligible", "revenue_eligible",
    "business_plan_eligible", "impact_eligible",
)

LOCK_FIELDS = ("is_locked", "locked_by", "lock_reason")

DD_PHASE_FIELDS = (
    "current_phase", "dd_status", "phase1_score", "phase1_status", "phase2_score", "phase2_status",
    "primary_reviewer_id", "primary_final_score", "validator_reviewer_id", "validator_action",
    "validator_comments", "is_oversight_initiated", "oversight_justification",
    "final_verdict", "final_reason", "final_decided_by",
)

# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_application(session: Session, application_id: int) -> Application:
    application = session.get(Application, application_id)
    if application is None:
        raise NotFoundError("Application", application_id)
    return application


def reload(session: Session, model, entity_id: int):
    """Re-read a row from the database, discarding in-session state."""
    return session.execute(
        select(model).where(model.id == entity_id).execution_options(populate_existing=True)
    ).scalars().one()


def find_result(session: Session, application_id: int) -> EligibilityResult | None:
    return session.execute(
        select(EligibilityResult).where(EligibilityResult.application_id == application_id)
    ).scalars().first()


def get_result(session: Session, application_id: int) -> EligibilityResult:
    result = find_result(session, application_id)
    if result is None:
        raise NotFoundError("EligibilityResult", application_id)
    return result


def ensure_result(session: Session, application: Application) -> EligibilityResult:
    """Return the application's EligibilityResult, creating it on first touch."""
    result = find_result(session, application.id)
    if result is not None:
        return result
    try:
        with session.begin_nested():
            result = EligibilityResult(application_id=application.id)
            session.add(result)
    except IntegrityError:
        # Another worker created it between our read and insert.
        result = get_result(session, application.id)
    return result


def find_dd_record(session: Session, application_id: int) -> DueDiligenceRecord | None:
    return session.execute(
        select(DueDiligenceRecord).where(DueDiligenceRecord.application_id == application_id)
    ).scalars().first()


def get_dd_record(session: Session, application_id: int) -> DueDiligenceRecord:
    record = find_dd_record(session, application_id)
    if record is None:
        raise NotFoundError("DueDiligenceRecord", application_id)
    return record


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def application_summary(application: Application) -> dict[str, Any]:
    return {
        "id": application.id,
        "user_id": application.user_id,
        "business_id": application.business_id,
        "track": application.track,
        "status": application.status,
        "is_observation_only": application.is_observation_only,
        "marked_for_revisit": application.marked_for_revisit,
        "submitted_at": isoformat(application.submitted_at),
    }


def _reviewer_block(result: EligibilityResult, tier: int, visible: bool) -> dict[str, Any]:
    prefix = f"reviewer{tier}"
    block = {
        "reviewer_id": getattr(result, f"{prefix}_id"),
        "assigned_at": isoformat(getattr(result, f"{prefix}_assigned_at")),
        "scored": getattr(result, f"{prefix}_score") is not None,
        "scored_at": isoformat(getattr(result, f"{prefix}_scored_at")),
    }
    if visible:
        block["score"] = getattr(result, f"{prefix}_score")
        block["notes"] = getattr(result, f"{prefix}_notes")
    return block


def result_summary(result: EligibilityResult, *, hide_tiers: tuple[int, ...] = ()) -> dict[str, Any]:
    """Serialise an EligibilityResult; tiers in *hide_tiers* omit score and notes."""
    return {
        "application_id": result.application_id,
        "scoring_config_id": result.scoring_config_id,
        "total_score": result.total_score,
        "is_eligible": result.is_eligible,
        "mandatory": {f: getattr(result, f) for f in MANDATORY_FIELDS},
        "category_scores": json_parse(result.category_scores_json),
        "evaluated_at": isoformat(result.evaluated_at),
        "reviewer1": _reviewer_block(result, 1, 1 not in hide_tiers),
        "reviewer2": _reviewer_block(result, 2, 2 not in hide_tiers),
        "reviewer2_overrode_reviewer1": result.reviewer2_overrode_reviewer1,
        "score_disparity": result.score_disparity,
        "qualifies_for_due_diligence": result.qualifies_for_due_diligence,
        **{f: getattr(result, f) for f in LOCK_FIELDS},
        "locked_at": isoformat(result.locked_at),
        "evaluation_notes": result.evaluation_notes,
    }


def dd_record_summary(record: DueDiligenceRecord, *, include_items: bool = True) -> dict[str, Any]:
    data: dict[str, Any] = {"application_id": record.application_id}
    data.update({f: getattr(record, f) for f in DD_PHASE_FIELDS})
    data["approval_deadline"] = isoformat(record.approval_deadline)
    data["final_decided_at"] = isoformat(record.final_decided_at)
    if include_items:
        data["items"] = [
            {
                "phase": item.phase,
                "category": item.category,
                "criterion": item.criterion,
                "score": item.score,
                "comments": item.comments,
            }
            for item in sorted(record.items, key=lambda i: (i.phase, i.id))
        ]
    return data


def reviewer_summary(reviewer: Reviewer) -> dict[str, Any]:
    return {
        "reviewer_id": reviewer.reviewer_id,
        "role": reviewer.role,
        "display_name": reviewer.display_name,
        "is_active": reviewer.is_active,
        "last_assigned_at": isoformat(reviewer.last_assigned_at),
    }


def configuration_summary(config: ScoringConfiguration) -> dict[str, Any]:
    tracks: dict[str, dict[str, float]] = {}
    for criterion in config.criteria:
        categories = tracks.setdefault(criterion.track, {})
        categories[criterion.category] = categories.get(criterion.category, 0.0) + criterion.max_points
    return {
        "id": config.id,
        "name": config.name,
        "version": config.version,
        "pass_threshold": config.pass_threshold,
        "total_max_score": config.total_max_score,
        "is_active": config.is_active,
        "criteria_count": len(config.criteria),
        "category_max_points": tracks,
    }
