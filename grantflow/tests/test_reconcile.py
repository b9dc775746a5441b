"""Retroactive status reconciliation after a pass-threshold change."""
from __future__ import annotations

from grantflow import due_diligence
from grantflow.configuration import set_pass_threshold
from grantflow.errors import NoActiveConfiguration, Unauthorized
from grantflow.models import Application
from grantflow.reconcile import reconcile_rejected_applications
from grantflow.schemas import Actor
from grantflow.services import get_result
from grantflow.tests.factories import foundation_answers, foundation_answers_65


def _status(session, app_id: int) -> str:
    return session.get(Application, app_id).status


class TestReconcile:
    def test_reviewed_application_promoted_to_approved(
        self, session, config, admin, make_application, complete_review,
    ):
        set_pass_threshold(session, admin, config.id, 70).unwrap()
        app_id = make_application()
        complete_review(app_id, 60, 70)
        assert get_result(session, app_id).total_score == 65
        assert _status(session, app_id) == "rejected"

        change = set_pass_threshold(session, admin, config.id, 60).unwrap()
        report = reconcile_rejected_applications(
            session, admin, previous_threshold=change["previous_threshold"],
        ).unwrap()

        assert report["new_threshold"] == 60
        assert report["promoted"] == [
            {"application_id": app_id, "from": "rejected", "to": "approved", "total_score": 65},
        ]
        assert _status(session, app_id) == "approved"
        notes = get_result(session, app_id).evaluation_notes
        expected = "[RECONCILIATION] Status updated from 'rejected' to 'approved' due to pass mark change (70% -> 60%)."
        assert expected in notes

        result = get_result(session, app_id)
        assert result.is_eligible is True
        assert result.qualifies_for_due_diligence is True
        record = due_diligence.claim(session, Actor(actor_id="tech-1", role="technical_reviewer"), app_id).unwrap()
        assert record.primary_reviewer_id == "tech-1"

        again = reconcile_rejected_applications(session, admin, previous_threshold=70).unwrap()
        assert again["promoted"] == []
        assert _status(session, app_id) == "approved"

    def test_automated_rejection_returns_to_scoring_phase(self, session, config, admin, make_application):
        set_pass_threshold(session, admin, config.id, 70).unwrap()
        app_id = make_application(foundation_answers_65())
        assert _status(session, app_id) == "rejected"
        assert get_result(session, app_id).is_eligible is False

        set_pass_threshold(session, admin, config.id, 60).unwrap()
        report = reconcile_rejected_applications(session, admin).unwrap()

        assert [p["to"] for p in report["promoted"]] == ["scoring_phase"]
        assert _status(session, app_id) == "scoring_phase"
        result = get_result(session, app_id)
        assert result.is_eligible is True
        assert "due to pass mark is now 60%." in result.evaluation_notes

    def test_mandatory_failure_stays_rejected(self, session, admin, make_application):
        app_id = make_application(foundation_answers(applicant_age=16))
        assert _status(session, app_id) == "rejected"

        report = reconcile_rejected_applications(session, admin).unwrap()
        assert report["promoted"] == []
        assert report["skipped"] == [{"application_id": app_id, "reason": "mandatory requirements not met"}]
        assert _status(session, app_id) == "rejected"

    def test_below_new_threshold_untouched(self, session, config, admin, make_application):
        set_pass_threshold(session, admin, config.id, 70).unwrap()
        app_id = make_application(foundation_answers_65())
        report = reconcile_rejected_applications(session, admin, new_threshold=66).unwrap()
        assert report["promoted"] == []
        assert _status(session, app_id) == "rejected"

    def test_never_demotes(self, session, admin, make_application):
        app_id = make_application()
        assert _status(session, app_id) == "scoring_phase"
        reconcile_rejected_applications(session, admin, new_threshold=100).unwrap()
        assert _status(session, app_id) == "scoring_phase"

    def test_admin_only(self, session, config, reviewer_x):
        outcome = reconcile_rejected_applications(session, reviewer_x)
        assert isinstance(outcome.error, Unauthorized)

    def test_needs_threshold_or_active_configuration(self, session, config, admin):
        config.is_active = False
        session.commit()
        outcome = reconcile_rejected_applications(session, admin)
        assert isinstance(outcome.error, NoActiveConfiguration)
