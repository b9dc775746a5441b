from __future__ import annotations

from typing import Any, Callable

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from grantflow import assignment, evaluation, intake, review
from grantflow.configuration import seed_default_configuration
from grantflow.models import Base
from grantflow.schemas import Actor, ApplicationSubmission
from grantflow.settings import Policy
from grantflow.tests.factories import foundation_answers

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def config(session: Session):
    cfg = seed_default_configuration(session)
    session.commit()
    return cfg


@pytest.fixture()
def policy() -> Policy:
    return Policy()


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


@pytest.fixture()
def admin() -> Actor:
    return Actor(actor_id="admin-1", role="admin")


@pytest.fixture()
def oversight() -> Actor:
    return Actor(actor_id="oversight-1", role="oversight")


@pytest.fixture()
def reviewer_x() -> Actor:
    return Actor(actor_id="rev-x", role="reviewer_1")


@pytest.fixture()
def reviewer_y() -> Actor:
    return Actor(actor_id="rev-y", role="reviewer_2")


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_application(session: Session, config, admin: Actor) -> Callable[..., int]:
    """Submit an application as admin and optionally evaluate it; returns its id."""

    def _make(answers: dict[str, Any] | None = None, *, track: str = "foundation", evaluate: bool = True) -> int:
        submission = ApplicationSubmission(
            user_id="applicant-1", track=track, answers=answers if answers is not None else foundation_answers(),
        )
        application = intake.submit_application(session, admin, submission).unwrap()
        if evaluate:
            evaluation.evaluate_application(session, admin, application.id).unwrap()
        return application.id

    return _make


@pytest.fixture()
def reviewer_pool(session: Session, admin: Actor) -> None:
    for reviewer_id, role in (
        ("rev-x", "reviewer_1"),
        ("rev-z", "reviewer_1"),
        ("rev-y", "reviewer_2"),
        ("rev-w", "reviewer_2"),
        ("admin-1", "admin"),
        ("oversight-1", "oversight"),
        ("tech-1", "technical_reviewer"),
        ("tech-2", "technical_reviewer"),
    ):
        assignment.register_reviewer(session, admin, reviewer_id, role).unwrap()


@pytest.fixture()
def complete_review(session: Session, reviewer_x: Actor, reviewer_y: Actor) -> Callable[..., None]:
    """Run both review tiers on an evaluated application."""

    def _review(application_id: int, r1: float, r2: float, *, override: bool = False) -> None:
        assignment.claim(session, reviewer_x, application_id, 1).unwrap()
        review.submit_reviewer1_score(session, reviewer_x, application_id, r1).unwrap()
        assignment.claim(session, reviewer_y, application_id, 2).unwrap()
        review.submit_reviewer2_score(session, reviewer_y, application_id, r2, override=override).unwrap()

    return _review


@pytest.fixture()
def file_db(tmp_path):
    """File-backed SQLite where every transaction starts with BEGIN IMMEDIATE.

    Yields a session factory and the id of one evaluated application.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'claims.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    admin = Actor(actor_id="admin-1", role="admin")
    with factory() as session:
        seed_default_configuration(session)
        session.commit()
        application = intake.submit_application(
            session, admin, ApplicationSubmission(user_id="u-1", track="foundation", answers=foundation_answers()),
        ).unwrap()
        evaluation.evaluate_application(session, admin, application.id).unwrap()
        app_id = application.id
    yield factory, app_id
    engine.dispose()
