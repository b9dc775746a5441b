"""Two-tier review: scoring, override, locking and the blind status view."""
from __future__ import annotations

from grantflow import assignment, review
from grantflow.errors import InvalidInput, InvalidTransition, RecordLocked, Unauthorized
from grantflow.models import Application
from grantflow.schemas import Actor
from grantflow.services import get_result
from grantflow.states import ReviewState, review_state


class TestTwoTierReview:
    def test_override_makes_reviewer_two_authoritative(self, session, make_application, reviewer_x, reviewer_y):
        app_id = make_application()
        assert review_state(get_result(session, app_id)) is ReviewState.UNASSIGNED

        assignment.claim(session, reviewer_x, app_id, 1).unwrap()
        review.submit_reviewer1_score(session, reviewer_x, app_id, 55, "Thin financials").unwrap()
        assert review_state(get_result(session, app_id)) is ReviewState.R1_SCORED

        assignment.claim(session, reviewer_y, app_id, 2).unwrap()
        assert session.get(Application, app_id).status == "pending_senior_review"
        result = review.submit_reviewer2_score(
            session, reviewer_y, app_id, 72, "Strong traction", override=True,
        ).unwrap()

        assert result.total_score == 72
        assert result.reviewer2_overrode_reviewer1 is True
        assert result.is_locked is True
        assert result.locked_by == "rev-y"
        assert review_state(result) is ReviewState.LOCKED
        assert result.is_eligible is True
        assert result.qualifies_for_due_diligence is True
        assert session.get(Application, app_id).status == "approved"
        assert "[REVIEW] Final score 72.0 (reviewer 2 override)" in result.evaluation_notes

    def test_without_override_scores_are_averaged(self, session, make_application, complete_review):
        app_id = make_application()
        complete_review(app_id, 60, 50)
        result = get_result(session, app_id)
        assert result.total_score == 55
        assert result.reviewer2_overrode_reviewer1 is False
        assert result.is_eligible is False
        assert result.qualifies_for_due_diligence is False
        assert session.get(Application, app_id).status == "rejected"

    def test_override_with_equal_score_is_not_an_override(self, session, make_application, complete_review):
        app_id = make_application()
        complete_review(app_id, 70, 70, override=True)
        result = get_result(session, app_id)
        assert result.reviewer2_overrode_reviewer1 is False
        assert result.total_score == 70

    def test_large_disparity_is_noted(self, session, make_application, complete_review):
        app_id = make_application()
        complete_review(app_id, 40, 80)
        result = get_result(session, app_id)
        assert result.score_disparity == 40
        assert "score disparity 40.0 exceeds 10.0" in result.evaluation_notes

    def test_reviewer_one_may_amend_until_tier_two_assigned(
        self, session, make_application, reviewer_x, reviewer_y,
    ):
        app_id = make_application()
        assignment.claim(session, reviewer_x, app_id, 1).unwrap()
        review.submit_reviewer1_score(session, reviewer_x, app_id, 50).unwrap()
        review.submit_reviewer1_score(session, reviewer_x, app_id, 58).unwrap()
        assert get_result(session, app_id).reviewer1_score == 58

        assignment.claim(session, reviewer_y, app_id, 2).unwrap()
        outcome = review.submit_reviewer1_score(session, reviewer_x, app_id, 65)
        assert isinstance(outcome.error, InvalidTransition)
        assert get_result(session, app_id).reviewer1_score == 58

    def test_only_assigned_reviewer_scores(self, session, make_application, reviewer_x):
        app_id = make_application()
        assignment.claim(session, reviewer_x, app_id, 1).unwrap()
        outcome = review.submit_reviewer1_score(session, Actor(actor_id="rev-z", role="reviewer_1"), app_id, 50)
        assert isinstance(outcome.error, Unauthorized)

    def test_score_range(self, session, make_application, reviewer_x):
        app_id = make_application()
        assignment.claim(session, reviewer_x, app_id, 1).unwrap()
        outcome = review.submit_reviewer1_score(session, reviewer_x, app_id, 120)
        assert isinstance(outcome.error, InvalidInput)

    def test_admin_assignment(self, session, make_application, reviewer_pool, admin):
        app_id = make_application()
        first = review.assign_reviewer1(session, admin, app_id).unwrap()
        assert first.reviewer_id == "rev-x"
        outcome = review.assign_reviewer(session, admin, app_id, 2, "rev-x")
        assert isinstance(outcome.error, InvalidInput)


class TestLocking:
    def test_locked_result_rejects_reviewer_writes(
        self, session, make_application, complete_review, reviewer_x, reviewer_y,
    ):
        app_id = make_application()
        complete_review(app_id, 55, 72, override=True)

        again = review.submit_reviewer2_score(session, reviewer_y, app_id, 90)
        assert isinstance(again.error, RecordLocked)
        assert again.error.locked_by == "rev-y"
        amend = review.submit_reviewer1_score(session, reviewer_x, app_id, 90)
        assert isinstance(amend.error, RecordLocked)
        assert get_result(session, app_id).total_score == 72

    def test_unlock_reopens_writes(self, session, make_application, complete_review, reviewer_y, admin):
        app_id = make_application()
        complete_review(app_id, 55, 72, override=True)

        missing_reason = review.unlock_application(session, admin, app_id, "  ")
        assert isinstance(missing_reason.error, InvalidInput)

        unlocked = review.unlock_application(session, admin, app_id, "Applicant appeal upheld").unwrap()
        assert unlocked.is_locked is False
        assert unlocked.lock_reason == "Unlocked by admin: Applicant appeal upheld"
        assert "[UNLOCK] by admin-1: Applicant appeal upheld" in unlocked.evaluation_notes
        assert review_state(unlocked) is ReviewState.R2_SCORED

        rescored = review.submit_reviewer2_score(session, reviewer_y, app_id, 50).unwrap()
        assert rescored.total_score == 52.5
        assert rescored.is_locked is True
        assert session.get(Application, app_id).status == "rejected"

    def test_admin_lock_blocks_reviewer_one(self, session, make_application, reviewer_x, admin):
        app_id = make_application()
        assignment.claim(session, reviewer_x, app_id, 1).unwrap()
        review.lock_application(session, admin, app_id, "Fraud check").unwrap()

        blocked = review.submit_reviewer1_score(session, reviewer_x, app_id, 60)
        assert isinstance(blocked.error, RecordLocked)
        assert blocked.error.context["lock_reason"] == "Fraud check"

        review.unlock_application(session, admin, app_id, "Fraud check cleared").unwrap()
        assert review.submit_reviewer1_score(session, reviewer_x, app_id, 60).ok

    def test_double_lock_and_unlocked_unlock(self, session, make_application, admin):
        app_id = make_application()
        review.lock_application(session, admin, app_id).unwrap()
        assert isinstance(review.lock_application(session, admin, app_id).error, RecordLocked)
        review.unlock_application(session, admin, app_id, "done").unwrap()
        assert isinstance(review.unlock_application(session, admin, app_id, "again").error, InvalidTransition)

    def test_only_admin_locks(self, session, make_application, reviewer_x):
        outcome = review.lock_application(session, reviewer_x, make_application(), "nope")
        assert isinstance(outcome.error, Unauthorized)


class TestBlindView:
    def test_reviewers_do_not_see_each_other(self, session, make_application, reviewer_x, reviewer_y, oversight):
        app_id = make_application()
        assignment.claim(session, reviewer_x, app_id, 1).unwrap()
        review.submit_reviewer1_score(session, reviewer_x, app_id, 55, "private").unwrap()
        assignment.claim(session, reviewer_y, app_id, 2).unwrap()

        as_r2 = review.get_review_status(session, reviewer_y, app_id).unwrap()
        assert "score" not in as_r2["reviewer1"]
        assert as_r2["reviewer1"]["scored"] is True
        assert as_r2["state"] == "r2_assigned"

        as_r1 = review.get_review_status(session, reviewer_x, app_id).unwrap()
        assert as_r1["reviewer1"]["score"] == 55

        as_oversight = review.get_review_status(session, oversight, app_id).unwrap()
        assert as_oversight["reviewer1"]["notes"] == "private"

    def test_scores_visible_once_both_scored(self, session, make_application, complete_review, reviewer_x):
        app_id = make_application()
        complete_review(app_id, 61, 67)
        view = review.get_review_status(session, reviewer_x, app_id).unwrap()
        assert view["reviewer2"]["score"] == 67
        assert view["state"] == "locked"
        assert view["application_status"] == "approved"
