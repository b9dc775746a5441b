"""Automated evaluation: run the scoring engine and persist the EligibilityResult."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from grantflow.configuration import get_active_configuration, load_configuration, snapshot
from grantflow.errors import (
    ConfigurationError, NoActiveConfiguration, RecordLocked, ScoringRejected, WorkflowError,
)
from grantflow.models import Application, EligibilityResult, EvaluationHistory
from grantflow.outcomes import operation
from grantflow.schemas import Actor
from grantflow.scorer import ActiveConfigurationPointer, ScoringError, score
from grantflow.services import ensure_result, get_application, get_result, reload
from grantflow.settings import Policy, get_policy
from grantflow.utils import json_parse, to_json, utc_now

log = logging.getLogger(__name__)

EVALUATOR_ROLES = ("admin", "oversight")

# Statuses an evaluation may move; later statuses belong to the review pipeline.
_PRE_REVIEW_STATUSES = ("submitted", "scoring_phase", "rejected")


@dataclass(frozen=True)
class EvaluationChange:
    application_id: int
    previous_score: float | None
    new_score: float
    previous_eligibility: bool | None
    new_eligibility: bool

    @property
    def changed(self) -> bool:
        return self.previous_score != self.new_score or self.previous_eligibility != self.new_eligibility


def _evaluate(
    session: Session,
    application: Application,
    config: ActiveConfigurationPointer,
    policy: Policy,
    *,
    changed_by: str,
    reason: str,
) -> EvaluationChange:
    card = score(application.track, json_parse(application.answers_json), config, policy)
    if isinstance(card, ScoringError):
        if card.reason in ("config_not_found", "unknown_track"):
            raise ConfigurationError(f"Cannot score application {application.id}: {card.detail}", reason=card.reason)
        raise ScoringRejected(card.reason, card.field, card.detail)

    result = ensure_result(session, application)
    if result.is_locked:
        raise RecordLocked(result.locked_by, result.locked_at, result.lock_reason)
    previous_score = result.total_score if result.evaluated_at else None
    previous_eligibility = result.is_eligible if result.evaluated_at else None
    previous_config = result.scoring_config_id
    now = utc_now()

    written = session.execute(
        update(EligibilityResult)
        .where(EligibilityResult.id == result.id, EligibilityResult.is_locked.is_(False))
        .values(
            scoring_config_id=card.config_id,
            age_eligible=card.mandatory.age,
            registration_eligible=card.mandatory.registration,
            revenue_eligible=card.mandatory.revenue,
            business_plan_eligible=card.mandatory.business_plan,
            impact_eligible=card.mandatory.impact,
            category_scores_json=to_json(card.category_scores),
            criterion_scores_json=to_json(card.criterion_scores),
            total_score=card.total_score,
            is_eligible=card.is_eligible,
            evaluated_at=now,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    result = reload(session, EligibilityResult, result.id)
    if not written:
        raise RecordLocked(result.locked_by, result.locked_at, result.lock_reason)

    change = EvaluationChange(
        application_id=application.id,
        previous_score=previous_score,
        new_score=card.total_score,
        previous_eligibility=previous_eligibility,
        new_eligibility=card.is_eligible,
    )
    if change.changed or previous_config != card.config_id:
        session.add(EvaluationHistory(
            application_id=application.id,
            previous_score=previous_score,
            new_score=card.total_score,
            previous_eligibility=previous_eligibility,
            new_eligibility=card.is_eligible,
            previous_config_id=previous_config,
            new_config_id=card.config_id,
            reason=reason,
            changed_by=changed_by,
            changed_at=now,
        ))

    if application.status in _PRE_REVIEW_STATUSES:
        application.status = "scoring_phase" if card.is_eligible else "rejected"
    session.flush()
    log.info(
        "Evaluated application %s: %.1f (%s)",
        application.id, card.total_score, "eligible" if card.is_eligible else "not eligible",
    )
    return change


@operation
def evaluate_application(
    session: Session,
    actor: Actor,
    application_id: int,
    policy: Policy | None = None,
) -> EligibilityResult:
    actor.require(*EVALUATOR_ROLES, action="evaluate applications")
    application = get_application(session, application_id)
    config = get_active_configuration(session)
    if config is None:
        raise NoActiveConfiguration()
    _evaluate(
        session, application, config, policy or get_policy(),
        changed_by=actor.actor_id, reason="initial evaluation",
    )
    return get_result(session, application.id)


@operation
def reevaluate_applications(
    session: Session,
    actor: Actor,
    config_id: int | None = None,
    application_ids: list[int] | None = None,
    policy: Policy | None = None,
) -> dict:
    """Re-score applications against a configuration, keeping history of changes.

    Locked results are skipped; a failure on one application is reported and
    does not stop the batch.
    """
    actor.require(*EVALUATOR_ROLES, action="re-evaluate applications")
    if config_id is not None:
        config = snapshot(load_configuration(session, config_id))
    else:
        config = get_active_configuration(session)
        if config is None:
            raise NoActiveConfiguration()
    policy = policy or get_policy()

    stmt = select(Application).order_by(Application.id)
    if application_ids is not None:
        stmt = stmt.where(Application.id.in_(application_ids))
    applications = session.execute(stmt).scalars().all()

    changes: list[EvaluationChange] = []
    skipped: list[dict] = []
    failed: list[dict] = []
    for application in applications:
        try:
            with session.begin_nested():
                changes.append(_evaluate(
                    session, application, config, policy,
                    changed_by=actor.actor_id, reason=f"re-evaluation against configuration {config.id}",
                ))
        except RecordLocked:
            skipped.append({"application_id": application.id, "reason": "locked"})
        except WorkflowError as exc:
            failed.append({"application_id": application.id, "error": exc.to_dict()})

    deltas = [c.new_score - c.previous_score for c in changes if c.previous_score is not None]
    summary = {
        "config_id": config.id,
        "evaluated": len(changes),
        "eligibility_changes": sum(1 for c in changes if c.previous_eligibility != c.new_eligibility),
        "newly_eligible": sum(1 for c in changes if c.new_eligibility and c.previous_eligibility is False),
        "lost_eligibility": sum(1 for c in changes if not c.new_eligibility and c.previous_eligibility),
        "average_score_change": round(sum(deltas) / len(deltas), 2) if deltas else 0.0,
        "skipped": skipped,
        "failed": failed,
    }
    log.info(
        "Re-evaluated %d applications (%d eligibility changes, %d skipped, %d failed)",
        summary["evaluated"], summary["eligibility_changes"], len(skipped), len(failed),
    )
    return summary
