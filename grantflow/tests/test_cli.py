from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from grantflow import evaluation, intake
from grantflow.cli import app
from grantflow.configuration import get_active_configuration, set_pass_threshold
from grantflow.db import dispose_engines, init_db, session_scope
from grantflow.schemas import ApplicationSubmission, SYSTEM_ACTOR
from grantflow.tests.factories import foundation_answers_65


@pytest.fixture()
def db_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'grantflow.db'}"
    yield url
    dispose_engines()


def _invoke(*args: str):
    return CliRunner().invoke(app, ["--json", *args])


def test_init_db_and_add_reviewer(db_url) -> None:
    result = _invoke("init-db", "--db-url", db_url)
    assert result.exit_code == 0
    assert json.loads(result.stdout)["seeded"] is True

    result = _invoke(
        "add-reviewer", "--reviewer-id", "rev-a", "--role", "reviewer_1", "--name", "Amina", "--db-url", db_url,
    )
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["reviewer_id"] == "rev-a"
    assert payload["role"] == "reviewer_1"
    assert payload["is_active"] is True


def test_add_reviewer_rejects_applicant_role(db_url) -> None:
    init_db(db_url)
    result = _invoke("add-reviewer", "--reviewer-id", "u-9", "--role", "applicant", "--db-url", db_url)
    assert result.exit_code == 1
    assert json.loads(result.stdout)["error"] == "invalid_input"


def test_set_threshold_with_reconcile(db_url) -> None:
    init_db(db_url)
    with session_scope(db_url) as session:
        config_id = get_active_configuration(session).id
        set_pass_threshold(session, SYSTEM_ACTOR, config_id, 70).unwrap()
        application = intake.submit_application(
            session, SYSTEM_ACTOR,
            ApplicationSubmission(user_id="u-1", track="foundation", answers=foundation_answers_65()),
        ).unwrap()
        evaluation.evaluate_application(session, SYSTEM_ACTOR, application.id).unwrap()
        app_id = application.id
        assert application.status == "rejected"

    result = _invoke("set-threshold", "--threshold", "60", "--reconcile", "--db-url", db_url)
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["previous_threshold"] == 70
    assert payload["new_threshold"] == 60
    assert payload["reconciliation"]["promoted"] == [
        {"application_id": app_id, "from": "rejected", "to": "scoring_phase", "total_score": 65.0},
    ]


def test_check_deadlines_and_empty_queue(db_url) -> None:
    init_db(db_url)
    result = _invoke("check-deadlines", "--db-url", db_url)
    assert result.exit_code == 0
    assert json.loads(result.stdout)["reassigned"] == []

    result = _invoke("dd-queue", "--db-url", db_url)
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"applications": []}
