"""Scoring configuration management.

Configurations are versioned; at most one is active at a time. Evaluation
never reads the active row directly: it asks for an
:class:`~grantflow.scorer.ActiveConfigurationPointer` snapshot once per call
and passes that down to the scoring engine.
"""
from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from grantflow.errors import InvalidInput, NotFoundError
from grantflow.models import ScoringConfiguration, ScoringCriterion, TRACKS
from grantflow.outcomes import operation
from grantflow.schemas import Actor, ConfigurationCreate
from grantflow.scorer import (
    DEFAULT_PASS_THRESHOLD, ActiveConfigurationPointer, CriterionSpec, default_criteria,
)
from grantflow.utils import json_parse, to_json, utc_now

log = logging.getLogger(__name__)


def snapshot(config: ScoringConfiguration) -> ActiveConfigurationPointer:
    criteria = [
        CriterionSpec(
            id=row.id,
            track=row.track,
            category=row.category,
            name=row.name,
            answer_keys=json_parse(row.answer_keys_json, []),
            max_points=row.max_points,
            required=row.required,
            sort_order=row.sort_order,
            logic=json_parse(row.logic_json),
        )
        for row in config.criteria
    ]
    return ActiveConfigurationPointer(
        id=config.id,
        name=config.name,
        version=config.version,
        pass_threshold=config.pass_threshold,
        total_max_score=config.total_max_score,
        criteria=criteria,
    )


def _active_row(session: Session) -> ScoringConfiguration | None:
    return session.execute(
        select(ScoringConfiguration).where(ScoringConfiguration.is_active.is_(True))
    ).scalars().first()


def get_active_configuration(session: Session) -> ActiveConfigurationPointer | None:
    row = _active_row(session)
    return snapshot(row) if row is not None else None


def load_configuration(session: Session, config_id: int) -> ScoringConfiguration:
    config = session.get(ScoringConfiguration, config_id)
    if config is None:
        raise NotFoundError("ScoringConfiguration", config_id)
    return config


def _add_criteria(config: ScoringConfiguration, criteria: list[CriterionSpec]) -> None:
    for i, spec in enumerate(criteria):
        if spec.track not in TRACKS:
            raise InvalidInput("track", f"{spec.track!r} is not one of {', '.join(TRACKS)}")
        if not spec.answer_keys:
            raise InvalidInput("answer_keys", f"criterion {spec.name!r} needs at least one answer key")
        config.criteria.append(ScoringCriterion(
            track=spec.track,
            category=spec.category,
            name=spec.name,
            answer_keys_json=to_json(spec.answer_keys),
            logic_json=spec.logic.model_dump_json(),
            max_points=spec.max_points,
            required=spec.required,
            sort_order=spec.sort_order or i,
        ))


def _activate(session: Session, config: ScoringConfiguration) -> None:
    # Deactivate first so the partial unique index never sees two active rows.
    session.execute(
        update(ScoringConfiguration)
        .where(ScoringConfiguration.is_active.is_(True), ScoringConfiguration.id != config.id)
        .values(is_active=False, updated_at=utc_now())
    )
    config.is_active = True
    session.flush()


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@operation
def create_configuration(session: Session, actor: Actor, data: ConfigurationCreate) -> ScoringConfiguration:
    actor.require("admin", action="create scoring configurations")
    config = ScoringConfiguration(
        name=data.name,
        description=data.description,
        version=data.version,
        pass_threshold=data.pass_threshold,
        total_max_score=data.total_max_score,
        created_by=actor.actor_id,
    )
    _add_criteria(config, data.criteria)
    session.add(config)
    session.flush()
    if data.activate:
        _activate(session, config)
    log.info("Created scoring configuration %s v%s (id=%s)", config.name, config.version, config.id)
    return config


@operation
def activate_configuration(session: Session, actor: Actor, config_id: int) -> ScoringConfiguration:
    actor.require("admin", action="activate scoring configurations")
    config = load_configuration(session, config_id)
    _activate(session, config)
    log.info("Activated scoring configuration %s (id=%s)", config.name, config.id)
    return config


@operation
def set_pass_threshold(session: Session, actor: Actor, config_id: int, threshold: float) -> dict:
    """Move a configuration's pass threshold. Returns previous and new values."""
    actor.require("admin", action="change the pass threshold")
    if not 0 <= threshold <= 100:
        raise InvalidInput("pass_threshold", "must be between 0 and 100")
    config = load_configuration(session, config_id)
    previous = config.pass_threshold
    config.pass_threshold = threshold
    session.flush()
    log.info("Pass threshold of configuration %s moved %.1f -> %.1f", config.id, previous, threshold)
    return {"config_id": config.id, "previous_threshold": previous, "new_threshold": threshold}


def seed_default_configuration(session: Session, *, force: bool = False) -> ScoringConfiguration:
    """Insert and activate the default rubric (caller must commit).

    With ``force`` a fresh copy is added even if configurations already exist.
    """
    if not force:
        existing = _active_row(session)
        if existing is not None:
            return existing
    config = ScoringConfiguration(
        name="Default grant rubric",
        description="Foundation and acceleration track rubric",
        version="1.0",
        pass_threshold=DEFAULT_PASS_THRESHOLD,
        total_max_score=100.0,
        created_by="system",
    )
    _add_criteria(config, default_criteria())
    session.add(config)
    session.flush()
    _activate(session, config)
    return config
