"""Named failures of the review pipeline.

Every expected business condition is one of these. Operations raise them so
the surrounding transaction rolls back, and :func:`grantflow.outcomes.operation`
turns them into a failed :class:`~grantflow.outcomes.Outcome` for the caller.
Each failure carries a ``context`` dict (which field, whose lock, which
criterion) so a UI can render an actionable message.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any


class WorkflowError(Exception):
    code = "workflow_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        context = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in self.context.items()
        }
        return {"error": self.code, "message": self.message, **context}


# ---------------------------------------------------------------------------
# Policy violations: the caller must correct its input
# ---------------------------------------------------------------------------


class PolicyViolation(WorkflowError):
    code = "policy_violation"


class RecordLocked(PolicyViolation):
    code = "record_locked"

    def __init__(self, locked_by: str | None, locked_at: datetime | None, reason: str | None = None) -> None:
        since = locked_at.strftime("%Y-%m-%d %H:%M") if locked_at else "unknown time"
        super().__init__(
            f"Record is locked by {locked_by or 'unknown'} since {since}",
            locked_by=locked_by,
            locked_at=locked_at,
            lock_reason=reason,
        )
        self.locked_by = locked_by
        self.locked_at = locked_at


class IncompleteScoring(PolicyViolation):
    code = "incomplete_scoring"

    def __init__(self, phase: int, missing: list[str]) -> None:
        super().__init__(
            f"Phase {phase} has {len(missing)} unscored criteria: {', '.join(missing)}",
            phase=phase,
            missing=list(missing),
        )
        self.phase = phase
        self.missing = list(missing)


class MissingJustification(PolicyViolation):
    code = "missing_justification"

    def __init__(self, field: str, min_length: int) -> None:
        super().__init__(
            f"'{field}' requires a written justification of at least {min_length} characters",
            field=field,
            min_length=min_length,
        )
        self.field = field


class InvalidTransition(PolicyViolation):
    code = "invalid_transition"

    def __init__(self, current: str, attempted: str, detail: str = "") -> None:
        message = f"Cannot move from '{current}' to '{attempted}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, current=current, attempted=attempted)
        self.current = current
        self.attempted = attempted


class Unauthorized(PolicyViolation):
    code = "unauthorized"

    def __init__(self, actor_id: str, role: str, action: str) -> None:
        super().__init__(
            f"Actor {actor_id} ({role}) may not {action}",
            actor_id=actor_id,
            role=role,
            action=action,
        )


class ConflictOfInterest(PolicyViolation):
    code = "conflict_of_interest"

    def __init__(self, actor_id: str, detail: str) -> None:
        super().__init__(f"Conflict of interest for {actor_id}: {detail}", actor_id=actor_id)


class InvalidInput(PolicyViolation):
    code = "invalid_input"

    def __init__(self, field: str, detail: str) -> None:
        super().__init__(f"Invalid '{field}': {detail}", field=field)
        self.field = field


class ScoringRejected(PolicyViolation):
    """The scoring engine refused the answers (missing or unmatched answer)."""

    code = "scoring_rejected"

    def __init__(self, reason: str, field: str | None, detail: str = "") -> None:
        message = f"Scoring failed ({reason})"
        if field:
            message = f"{message} on '{field}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, reason=reason, field=field)
        self.reason = reason
        self.field = field


class NotEligibleForDueDiligence(PolicyViolation):
    code = "not_eligible_for_due_diligence"

    def __init__(self, application_id: int, detail: str) -> None:
        super().__init__(
            f"Application {application_id} cannot enter due diligence: {detail}",
            application_id=application_id,
        )


# ---------------------------------------------------------------------------
# Conflicts: the caller must re-fetch current state
# ---------------------------------------------------------------------------


class ConflictError(WorkflowError):
    code = "conflict"


class AlreadyClaimed(ConflictError):
    code = "already_claimed"

    def __init__(self, field: str, holder: str | None) -> None:
        super().__init__(f"{field} is already held by {holder}", field=field, holder=holder)
        self.holder = holder


class AlreadyScored(ConflictError):
    code = "already_scored"

    def __init__(self, tier: int | str) -> None:
        super().__init__(f"Tier {tier} has already been scored", tier=tier)
        self.tier = tier


class AlreadyDecided(ConflictError):
    code = "already_decided"

    def __init__(self, verdict: str, decided_by: str | None) -> None:
        super().__init__(
            f"Final verdict '{verdict}' was already recorded by {decided_by}",
            verdict=verdict,
            decided_by=decided_by,
        )


class StaleRecord(ConflictError):
    code = "stale_record"

    def __init__(self, entity: str, entity_id: int, detail: str) -> None:
        super().__init__(f"{entity} {entity_id} changed concurrently: {detail}", entity=entity, entity_id=entity_id)


# ---------------------------------------------------------------------------
# Configuration errors: operator-facing
# ---------------------------------------------------------------------------


class ConfigurationError(WorkflowError):
    code = "configuration_error"


class NoActiveConfiguration(ConfigurationError):
    code = "no_active_configuration"

    def __init__(self) -> None:
        super().__init__("No scoring configuration is active")


class UnknownCriterion(ConfigurationError):
    code = "unknown_criterion"

    def __init__(self, phase: int, criterion: str) -> None:
        super().__init__(f"Phase {phase} has no criterion named '{criterion}'", phase=phase, criterion=criterion)


class NoReviewerAvailable(ConfigurationError):
    code = "no_reviewer_available"

    def __init__(self, role: str, application_id: int) -> None:
        super().__init__(
            f"No active {role} reviewer is available for application {application_id}",
            role=role,
            application_id=application_id,
        )


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(WorkflowError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id
