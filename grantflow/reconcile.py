"""Retroactive promotion after the pass threshold moves.

Selects every ``rejected`` application whose total now reaches the threshold
and moves it forward: ``approved`` when a reviewer already scored it,
``scoring_phase`` when the rejection came from automated evaluation alone.
Every promoted result becomes eligible, and qualifies for due diligence when
its total reaches the DD threshold; the lock does not cover these flags.
Applications are never demoted. The status write is conditional on the row
still being ``rejected``, so a second run over the same data finds nothing to
do.
"""
from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from grantflow.configuration import get_active_configuration
from grantflow.errors import NoActiveConfiguration
from grantflow.models import Application, EligibilityResult
from grantflow.outcomes import operation
from grantflow.schemas import Actor
from grantflow.services import MANDATORY_FIELDS, reload
from grantflow.settings import Policy, get_policy
from grantflow.utils import append_note, utc_now

log = logging.getLogger(__name__)


def _human_reviewed(result: EligibilityResult) -> bool:
    return result.reviewer1_score is not None or result.reviewer2_score is not None


def _describe_change(new_threshold: float, previous_threshold: float | None) -> str:
    if previous_threshold is None:
        return f"pass mark is now {new_threshold:g}%"
    return f"pass mark change ({previous_threshold:g}% -> {new_threshold:g}%)"


@operation
def reconcile_rejected_applications(
    session: Session,
    actor: Actor,
    new_threshold: float | None = None,
    previous_threshold: float | None = None,
    policy: Policy | None = None,
) -> dict:
    actor.require("admin", action="reconcile application statuses")
    policy = policy or get_policy()
    if new_threshold is None:
        config = get_active_configuration(session)
        if config is None:
            raise NoActiveConfiguration()
        new_threshold = config.pass_threshold

    rows = session.execute(
        select(Application, EligibilityResult)
        .join(EligibilityResult, EligibilityResult.application_id == Application.id)
        .where(Application.status == "rejected", EligibilityResult.total_score >= new_threshold)
        .order_by(Application.id)
    ).all()

    promoted: list[dict] = []
    skipped: list[dict] = []
    reason = _describe_change(new_threshold, previous_threshold)
    for application, result in rows:
        reviewed = _human_reviewed(result)
        if not reviewed and not all(getattr(result, f) for f in MANDATORY_FIELDS):
            skipped.append({"application_id": application.id, "reason": "mandatory requirements not met"})
            continue
        target = "approved" if reviewed else "scoring_phase"
        moved = session.execute(
            update(Application)
            .where(Application.id == application.id, Application.status == "rejected")
            .values(status=target, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        ).rowcount
        if moved != 1:
            continue
        session.refresh(application)
        session.execute(
            update(EligibilityResult)
            .where(EligibilityResult.id == result.id)
            .values(
                is_eligible=True,
                qualifies_for_due_diligence=result.total_score >= policy.dd_threshold,
            )
            .execution_options(synchronize_session=False)
        )
        result = reload(session, EligibilityResult, result.id)
        result.evaluation_notes = append_note(
            result.evaluation_notes,
            f"[RECONCILIATION] Status updated from 'rejected' to '{target}' due to {reason}.",
        )
        promoted.append({
            "application_id": application.id,
            "from": "rejected",
            "to": target,
            "total_score": result.total_score,
        })
    session.flush()
    log.info(
        "Reconciliation at %.1f: %d promoted, %d left rejected",
        new_threshold, len(promoted), len(skipped),
    )
    return {
        "new_threshold": new_threshold,
        "previous_threshold": previous_threshold,
        "promoted": promoted,
        "skipped": skipped,
    }
