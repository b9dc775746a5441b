"""Scoring configurations, intake and automated evaluation."""
from __future__ import annotations

from sqlalchemy import func, select

from grantflow import configuration, evaluation, intake
from grantflow.errors import NoActiveConfiguration, RecordLocked, ScoringRejected, Unauthorized
from grantflow.models import Application, EligibilityResult, EvaluationHistory, ScoringConfiguration
from grantflow.review import lock_application
from grantflow.schemas import Actor, ApplicationSubmission, ConfigurationCreate
from grantflow.scorer import CriterionSpec
from grantflow.services import get_result
from grantflow.settings import Policy
from grantflow.tests.factories import foundation_answers, foundation_answers_65


def _small_config(**kwargs) -> ConfigurationCreate:
    return ConfigurationCreate(
        name="Pilot rubric",
        criteria=[
            CriterionSpec(
                track="foundation", category="Commercial Viability", name="Revenue Last Year",
                answer_keys=["revenue_last_year"], max_points=100,
                logic={"kind": "threshold", "bands": [{"value": 1_000_000, "points": 100}], "default": 40},
            ),
        ],
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Configurations
# ---------------------------------------------------------------------------


class TestConfigurations:
    def test_seeded_default_is_active(self, session, config):
        active = configuration.get_active_configuration(session)
        assert active is not None
        assert active.id == config.id
        assert active.pass_threshold == 60
        assert {c.track for c in active.criteria} == {"foundation", "acceleration"}

    def test_activation_is_exclusive(self, session, config, admin):
        created = configuration.create_configuration(session, admin, _small_config(activate=True)).unwrap()
        active_count = session.execute(
            select(func.count()).select_from(ScoringConfiguration).where(ScoringConfiguration.is_active.is_(True))
        ).scalar_one()
        assert active_count == 1
        assert configuration.get_active_configuration(session).id == created.id

        configuration.activate_configuration(session, admin, config.id).unwrap()
        assert configuration.get_active_configuration(session).id == config.id

    def test_only_admin_creates(self, session, config, reviewer_x):
        outcome = configuration.create_configuration(session, reviewer_x, _small_config())
        assert isinstance(outcome.error, Unauthorized)

    def test_set_pass_threshold(self, session, config, admin):
        change = configuration.set_pass_threshold(session, admin, config.id, 70).unwrap()
        assert change == {"config_id": config.id, "previous_threshold": 60, "new_threshold": 70}
        assert configuration.get_active_configuration(session).pass_threshold == 70

    def test_threshold_out_of_range(self, session, config, admin):
        assert not configuration.set_pass_threshold(session, admin, config.id, 140).ok


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


class TestIntake:
    def test_applicant_submits_own(self, session, config):
        applicant = Actor(actor_id="u-1", role="applicant")
        outcome = intake.submit_application(
            session, applicant, ApplicationSubmission(user_id="u-1", track="foundation", answers=foundation_answers()),
        )
        assert outcome.ok
        assert outcome.value.status == "submitted"
        assert outcome.value.is_observation_only is False

    def test_applicant_cannot_submit_for_others(self, session, config):
        applicant = Actor(actor_id="u-1", role="applicant")
        outcome = intake.submit_application(
            session, applicant, ApplicationSubmission(user_id="u-2", track="foundation"),
        )
        assert isinstance(outcome.error, Unauthorized)

    def test_observation_only_rule(self):
        policy = Policy()
        assert intake.is_observation_only({"country": "Kenya", "revenue_last_year": 200_000}, policy)
        assert intake.is_observation_only({"country": "kenya"}, policy)
        assert not intake.is_observation_only({"country": "kenya", "revenue_last_year": 900_000}, policy)
        assert not intake.is_observation_only({"country": "uganda", "revenue_last_year": 1}, policy)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class TestEvaluation:
    def test_eligible_application_enters_scoring_phase(self, session, make_application):
        app_id = make_application()
        result = get_result(session, app_id)
        assert result.total_score == 100
        assert result.is_eligible
        assert session.get(Application, app_id).status == "scoring_phase"
        history = session.execute(
            select(EvaluationHistory).where(EvaluationHistory.application_id == app_id)
        ).scalars().all()
        assert len(history) == 1
        assert history[0].previous_score is None

    def test_ineligible_application_is_rejected(self, session, make_application):
        app_id = make_application(foundation_answers(applicant_age=16))
        result = get_result(session, app_id)
        assert result.age_eligible is False
        assert result.is_eligible is False
        assert session.get(Application, app_id).status == "rejected"

    def test_missing_answer_rejects_call(self, session, make_application, admin):
        answers = foundation_answers()
        del answers["relative_pricing"]
        app_id = make_application(answers, evaluate=False)
        outcome = evaluation.evaluate_application(session, admin, app_id)
        assert isinstance(outcome.error, ScoringRejected)
        assert outcome.error.context["field"] == "relative_pricing"
        assert session.execute(select(EligibilityResult)).first() is None

    def test_no_active_configuration(self, session, make_application, admin, config):
        app_id = make_application(evaluate=False)
        config.is_active = False
        session.commit()
        outcome = evaluation.evaluate_application(session, admin, app_id)
        assert isinstance(outcome.error, NoActiveConfiguration)

    def test_locked_result_is_not_rescored(self, session, make_application, admin):
        app_id = make_application()
        lock_application(session, admin, app_id, "frozen for audit").unwrap()
        outcome = evaluation.evaluate_application(session, admin, app_id)
        assert isinstance(outcome.error, RecordLocked)
        assert outcome.error.locked_by == "admin-1"

    def test_reevaluation_records_history(self, session, make_application, admin, config):
        strong = make_application()
        weak = make_application(foundation_answers_65())
        locked = make_application()
        lock_application(session, admin, locked, "").unwrap()
        created = configuration.create_configuration(session, admin, _small_config(pass_threshold=70)).unwrap()

        summary = evaluation.reevaluate_applications(session, admin, config_id=created.id).unwrap()
        assert summary["evaluated"] == 2
        assert summary["skipped"] == [{"application_id": locked, "reason": "locked"}]
        assert get_result(session, strong).total_score == 100
        assert get_result(session, weak).total_score == 100
        assert summary["average_score_change"] == 17.5
        rows = session.execute(
            select(EvaluationHistory).where(EvaluationHistory.application_id == weak).order_by(EvaluationHistory.id)
        ).scalars().all()
        assert [r.new_config_id for r in rows] == [config.id, created.id]
