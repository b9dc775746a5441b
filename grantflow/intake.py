"""Accepts completed applications from the submission layer."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from grantflow.errors import Unauthorized
from grantflow.models import Application
from grantflow.outcomes import operation
from grantflow.schemas import Actor, ApplicationSubmission
from grantflow.scorer import to_number
from grantflow.settings import Policy, get_policy
from grantflow.utils import to_json, utc_now

log = logging.getLogger(__name__)


def is_observation_only(answers: dict[str, Any], policy: Policy) -> bool:
    """Applicants from the observation country below the revenue floor are observed, not reviewed."""
    country = str(answers.get("country") or "").strip().lower()
    revenue = to_number(answers.get("revenue_last_year"))
    return (
        country == policy.observation_country.lower()
        and (revenue is None or revenue < policy.observation_revenue_floor)
    )


@operation
def submit_application(
    session: Session,
    actor: Actor,
    submission: ApplicationSubmission,
    policy: Policy | None = None,
) -> Application:
    actor.require("applicant", "admin", action="submit applications")
    if actor.role == "applicant" and submission.user_id != actor.actor_id:
        raise Unauthorized(actor.actor_id, actor.role, f"submit on behalf of {submission.user_id}")
    policy = policy or get_policy()
    observed = is_observation_only(submission.answers, policy)
    application = Application(
        user_id=submission.user_id,
        business_id=submission.business_id,
        track=submission.track,
        status="submitted",
        answers_json=to_json(submission.answers),
        is_observation_only=observed,
        marked_for_revisit=observed,
        submitted_at=utc_now(),
    )
    session.add(application)
    session.flush()
    log.info(
        "Application %s submitted (%s track%s)",
        application.id, application.track, ", observation only" if observed else "",
    )
    return application
