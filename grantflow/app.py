from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from grantflow import assignment, configuration, due_diligence, evaluation, intake, reconcile, review
from grantflow.db import init_db, session_generator
from grantflow.errors import (
    ConfigurationError, ConflictError, NotFoundError, PolicyViolation, RecordLocked, Unauthorized, WorkflowError,
)
from grantflow.outcomes import Outcome
from grantflow.schemas import (
    Actor,
    ApplicationSubmission,
    AssignRequest,
    ConfigurationCreate,
    DDItemIn,
    FinalDecisionIn,
    JustificationIn,
    LockRequest,
    PrimaryReviewIn,
    ReconcileRequest,
    ReviewerActiveUpdate,
    ReviewerCreate,
    ReviewScoreIn,
    ThresholdUpdate,
    ValidatorDecisionIn,
)
from grantflow.services import (
    application_summary, configuration_summary, dd_record_summary, get_application, get_dd_record,
    result_summary, reviewer_summary,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Grantflow",
    version="0.1.0",
    description=(
        "Grant application review pipeline: automated eligibility scoring, two-tier peer review "
        "with locking, and due diligence with a primary reviewer / validator loop. "
        "The caller is identified by the X-Actor-Id and X-Actor-Role headers."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Applications", "description": "Submit and evaluate applications."},
        {"name": "Review", "description": "Tier-1 / tier-2 assignment, scoring and locks."},
        {"name": "Reviewers", "description": "Manage the reviewer pool."},
        {"name": "Configurations", "description": "Scoring configurations and the pass threshold."},
        {"name": "Due Diligence", "description": "Phase scoring, validation and final verdicts."},
        {"name": "Admin", "description": "Batch jobs: reconciliation and deadline checks."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def current_actor(
    x_actor_id: str = Header(..., description="Authenticated caller id"),
    x_actor_role: str = Header(..., description="Caller role"),
) -> Actor:
    try:
        return Actor(actor_id=x_actor_id, role=x_actor_role)
    except ValidationError as exc:
        raise HTTPException(401, "Invalid actor headers") from exc


def _status_for(error: WorkflowError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, RecordLocked):
        return 423
    if isinstance(error, Unauthorized):
        return 403
    if isinstance(error, ConflictError):
        return 409
    if isinstance(error, PolicyViolation):
        return 422
    if isinstance(error, ConfigurationError):
        return 503
    return 400


def _unwrap(outcome: Outcome) -> Any:
    if outcome.error is not None:
        raise HTTPException(_status_for(outcome.error), outcome.error.to_dict())
    return outcome.value


def _lookup(fn, *args):
    try:
        return fn(*args)
    except NotFoundError as exc:
        raise HTTPException(404, exc.to_dict()) from exc


class ReevaluateRequest(BaseModel):
    config_id: int | None = None
    application_ids: list[int] | None = None


# ---------------------------------------------------------------------------
# Routes: Applications
# ---------------------------------------------------------------------------


@app.post("/api/applications", status_code=201, tags=["Applications"], summary="Submit a completed application")
def submit_application(
    body: ApplicationSubmission,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return application_summary(_unwrap(intake.submit_application(session, actor, body)))


@app.get("/api/applications/{application_id}", tags=["Applications"], summary="Application with its review state")
def get_application_detail(
    application_id: int,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    data = application_summary(_lookup(get_application, session, application_id))
    status = review.get_review_status(session, actor, application_id)
    data["review"] = status.value if status.ok else None
    return data


@app.post("/api/applications/{application_id}/evaluate", tags=["Applications"],
          summary="Run automated scoring against the active configuration")
def evaluate_application(
    application_id: int,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return result_summary(_unwrap(evaluation.evaluate_application(session, actor, application_id)))


@app.post("/api/evaluations/reevaluate", tags=["Applications"],
          summary="Re-score applications, keeping history of changed results")
def reevaluate(
    body: ReevaluateRequest,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return _unwrap(evaluation.reevaluate_applications(
        session, actor, config_id=body.config_id, application_ids=body.application_ids,
    ))


# ---------------------------------------------------------------------------
# Routes: Review
# ---------------------------------------------------------------------------


def _assignment_out(a: assignment.Assignment) -> dict[str, Any]:
    return {
        "application_id": a.application_id,
        "tier": a.tier,
        "reviewer_id": a.reviewer_id,
        "assigned_at": a.assigned_at.isoformat(),
    }


@app.get("/api/applications/{application_id}/review", tags=["Review"],
         summary="Review status, blind to the other reviewer's score until both have scored")
def get_review_status(
    application_id: int,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return _unwrap(review.get_review_status(session, actor, application_id))


@app.post("/api/applications/{application_id}/tiers/{tier}/claim", tags=["Review"],
          summary="Claim the tier as the calling reviewer")
def claim_tier(
    application_id: int,
    tier: int,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return _assignment_out(_unwrap(assignment.claim(session, actor, application_id, tier)))


@app.post("/api/applications/{application_id}/tiers/{tier}/assign", tags=["Review"],
          summary="Assign a tier reviewer (explicit, or least-loaded from the pool)")
def assign_tier(
    application_id: int,
    tier: int,
    body: AssignRequest,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return _assignment_out(_unwrap(review.assign_reviewer(session, actor, application_id, tier, body.reviewer_id)))


@app.post("/api/applications/{application_id}/tiers/{tier}/score", tags=["Review"],
          summary="Submit a tier score")
def submit_score(
    application_id: int,
    tier: int,
    body: ReviewScoreIn,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    if tier == 1:
        outcome = review.submit_reviewer1_score(session, actor, application_id, body.score, body.notes)
    elif tier == 2:
        outcome = review.submit_reviewer2_score(
            session, actor, application_id, body.score, body.notes, override=body.override,
        )
    else:
        raise HTTPException(404, "Unknown tier")
    return result_summary(_unwrap(outcome))


@app.post("/api/applications/{application_id}/lock", tags=["Review"], summary="Lock the review (admin)")
def lock(
    application_id: int,
    body: LockRequest,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return result_summary(_unwrap(review.lock_application(session, actor, application_id, body.reason)))


@app.post("/api/applications/{application_id}/unlock", tags=["Review"], summary="Unlock the review (admin, audited)")
def unlock(
    application_id: int,
    body: LockRequest,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return result_summary(_unwrap(review.unlock_application(session, actor, application_id, body.reason)))


@app.post("/api/assignments/{tier}/bulk", tags=["Review"], summary="Assign every waiting application for a tier")
def bulk_assign(tier: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return _unwrap(assignment.bulk_assign(session, actor, tier))


@app.post("/api/assignments/{tier}/redistribute", tags=["Review"],
          summary="Clear pending tier assignments and spread them evenly again")
def redistribute(tier: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return _unwrap(assignment.redistribute(session, actor, tier))


# ---------------------------------------------------------------------------
# Routes: Reviewers
# ---------------------------------------------------------------------------


@app.post("/api/reviewers", status_code=201, tags=["Reviewers"], summary="Add or update a pool member")
def register_reviewer(
    body: ReviewerCreate,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return reviewer_summary(_unwrap(assignment.register_reviewer(
        session, actor, body.reviewer_id, body.role, body.display_name,
    )))


@app.put("/api/reviewers/{reviewer_id}/active", tags=["Reviewers"], summary="Activate or deactivate a pool member")
def set_reviewer_active(
    reviewer_id: str,
    body: ReviewerActiveUpdate,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return reviewer_summary(_unwrap(assignment.set_reviewer_active(session, actor, reviewer_id, body.is_active)))


@app.get("/api/applications/{application_id}/validators", tags=["Reviewers"],
         summary="Validators eligible for the application's due diligence")
def list_validators(application_id: int, session: Session = Depends(db_session)):
    return [reviewer_summary(r) for r in _unwrap(assignment.get_available_validators(session, application_id))]


# ---------------------------------------------------------------------------
# Routes: Configurations
# ---------------------------------------------------------------------------


@app.get("/api/configurations/active", tags=["Configurations"], summary="The active scoring configuration")
def get_active_configuration(session: Session = Depends(db_session)):
    pointer = configuration.get_active_configuration(session)
    if pointer is None:
        raise HTTPException(503, "No active scoring configuration")
    return configuration_summary(configuration.load_configuration(session, pointer.id))


@app.post("/api/configurations", status_code=201, tags=["Configurations"],
          summary="Create a scoring configuration")
def create_configuration(
    body: ConfigurationCreate,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return configuration_summary(_unwrap(configuration.create_configuration(session, actor, body)))


@app.post("/api/configurations/{config_id}/activate", tags=["Configurations"],
          summary="Make a configuration the single active one")
def activate_configuration(
    config_id: int,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return configuration_summary(_unwrap(configuration.activate_configuration(session, actor, config_id)))


@app.put("/api/configurations/{config_id}/threshold", tags=["Configurations"],
         summary="Move the pass threshold, optionally reconciling rejected applications")
def set_threshold(
    config_id: int,
    body: ThresholdUpdate,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    change = _unwrap(configuration.set_pass_threshold(session, actor, config_id, body.pass_threshold))
    if body.reconcile:
        change["reconciliation"] = _unwrap(reconcile.reconcile_rejected_applications(
            session, actor, change["new_threshold"], change["previous_threshold"],
        ))
    return change


# ---------------------------------------------------------------------------
# Routes: Due Diligence (queue before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


@app.get("/api/due-diligence/queue", tags=["Due Diligence"], summary="Applications eligible for due diligence")
def dd_queue(session: Session = Depends(db_session)):
    return _unwrap(due_diligence.dd_queue(session))


@app.get("/api/due-diligence/{application_id}", tags=["Due Diligence"], summary="Due-diligence record with items")
def get_dd_record_detail(application_id: int, session: Session = Depends(db_session)):
    return dd_record_summary(_lookup(get_dd_record, session, application_id))


@app.post("/api/due-diligence/{application_id}/open", tags=["Due Diligence"], summary="Open the record")
def open_dd_record(application_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return dd_record_summary(_unwrap(due_diligence.open_record(session, actor, application_id)))


@app.post("/api/due-diligence/{application_id}/claim", tags=["Due Diligence"],
          summary="Claim the record as primary reviewer")
def claim_dd_record(application_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return dd_record_summary(_unwrap(due_diligence.claim(session, actor, application_id)))


@app.post("/api/due-diligence/{application_id}/assign", tags=["Due Diligence"],
          summary="Assign the least-loaded primary reviewer")
def assign_dd_record(application_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return dd_record_summary(_unwrap(due_diligence.assign_primary_reviewer(session, actor, application_id)))


@app.put("/api/due-diligence/{application_id}/items", tags=["Due Diligence"],
         summary="Score one criterion (0, 1, 3 or 5)")
def save_dd_item(
    application_id: int,
    body: DDItemIn,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return dd_record_summary(_unwrap(due_diligence.save_item(
        session, actor, application_id, body.phase, body.criterion, body.score, body.comments,
    )))


@app.post("/api/due-diligence/{application_id}/submit", tags=["Due Diligence"],
          summary="Submit the phase to the nominated validator")
def submit_primary_review(
    application_id: int,
    body: PrimaryReviewIn,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return dd_record_summary(_unwrap(due_diligence.submit_primary_review(
        session, actor, application_id, body.phase,
        final_score=body.final_score, notes=body.notes, validator_id=body.validator_id,
    )))


@app.post("/api/due-diligence/{application_id}/validate", tags=["Due Diligence"],
          summary="Approve or query the submitted phase")
def validator_decision(
    application_id: int,
    body: ValidatorDecisionIn,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return dd_record_summary(_unwrap(due_diligence.validator_decision(
        session, actor, application_id, body.action, body.comments,
    )))


@app.post("/api/due-diligence/{application_id}/skip-phase2", tags=["Due Diligence"],
          summary="Waive the physical verification phase")
def skip_phase2(
    application_id: int,
    body: JustificationIn,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return dd_record_summary(_unwrap(due_diligence.skip_phase2(session, actor, application_id, body.justification)))


@app.post("/api/due-diligence/{application_id}/recommend", tags=["Due Diligence"],
          summary="Oversight recommendation into due diligence")
def recommend(
    application_id: int,
    body: JustificationIn,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return dd_record_summary(_unwrap(due_diligence.recommend_for_due_diligence(
        session, actor, application_id, body.justification,
    )))


@app.post("/api/due-diligence/{application_id}/final", tags=["Due Diligence"],
          summary="Record the final pass/fail verdict")
def final_decision(
    application_id: int,
    body: FinalDecisionIn,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return dd_record_summary(_unwrap(due_diligence.save_final_decision(
        session, actor, application_id, body.verdict, body.reason,
    )))


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.post("/api/admin/reconcile", tags=["Admin"], summary="Promote rejected applications above the pass threshold")
def run_reconciliation(
    body: ReconcileRequest,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return _unwrap(reconcile.reconcile_rejected_applications(
        session, actor, body.new_threshold, body.previous_threshold,
    ))


@app.post("/api/admin/check-deadlines", tags=["Admin"],
          summary="Reassign due-diligence records whose approval window ran out")
def check_deadlines(actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return _unwrap(due_diligence.check_approval_deadlines(session, actor))


if __name__ == "__main__":
    import uvicorn

    from grantflow.settings import get_settings

    settings = get_settings()
    uvicorn.run("grantflow.app:app", host=settings.api_host, port=settings.api_port, reload=False)
