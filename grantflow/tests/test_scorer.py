"""Tests for the pure scoring engine."""
from __future__ import annotations

import pytest

from grantflow.scorer import (
    ActiveConfigurationPointer, CriterionSpec, ScoreCard, ScoringError, check_mandatory, default_criteria,
    score, score_criterion,
)
from grantflow.settings import Policy, TrackPolicy
from grantflow.tests.factories import foundation_answers, foundation_answers_65


@pytest.fixture()
def pointer() -> ActiveConfigurationPointer:
    return ActiveConfigurationPointer(id=1, name="Default", pass_threshold=60, criteria=default_criteria())


# ---------------------------------------------------------------------------
# Track scoring
# ---------------------------------------------------------------------------


class TestFoundationScoring:
    def test_revenue_and_funding_bands(self, pointer):
        card = score("foundation", foundation_answers(revenue_last_year=2_500_000, has_external_funding="no"),
                     pointer, Policy())
        assert isinstance(card, ScoreCard)
        assert card.criterion_scores["Revenue Last Year"] == 10
        assert card.criterion_scores["External Funding Received"] == 5

    def test_full_marks_are_eligible(self, pointer):
        card = score("foundation", foundation_answers(), pointer, Policy())
        assert card.total_score == 100
        assert card.mandatory.all_met
        assert card.is_eligible
        assert card.category_scores == {
            "Commercial Viability": 30, "Business Model": 10, "Market Potential": 30, "Social Impact": 30,
        }

    def test_weaker_answers(self, pointer):
        card = score("foundation", foundation_answers_65(), pointer, Policy())
        assert card.total_score == 65
        assert card.is_eligible

    def test_revenue_band_edges(self, pointer):
        mid = score("foundation", foundation_answers(revenue_last_year=1_000_000), pointer, Policy())
        top_edge = score("foundation", foundation_answers(revenue_last_year=2_000_000), pointer, Policy())
        assert mid.criterion_scores["Revenue Last Year"] == 5
        # The top band is strictly greater than 2M.
        assert top_edge.criterion_scores["Revenue Last Year"] == 5

    def test_special_groups_sum_answer_keys(self, pointer):
        card = score("foundation", foundation_answers(women_employees=3, youth_employees=2, pwd_employees=1),
                     pointer, Policy())
        assert card.criterion_scores["Special Groups Employed"] == 6

    def test_boolean_answers_map_to_yes_no(self, pointer):
        card = score("foundation", foundation_answers(has_external_funding=True), pointer, Policy())
        assert card.criterion_scores["External Funding Received"] == 1

    def test_deterministic(self, pointer):
        answers = foundation_answers_65()
        first = score("foundation", answers, pointer, Policy())
        second = score("foundation", dict(answers), pointer, Policy())
        assert first == second


class TestAccelerationScoring:
    def test_scores_acceleration_rubric(self, pointer):
        answers = {
            "applicant_age": 40, "years_operational": 5, "is_registered": True, "has_financial_records": True,
            "business_description": "x" * 60, "problem_solved": "y" * 60,
            "revenue_last_year": 6_000_000, "average_annual_revenue_growth": "above_20",
            "future_sales_growth": "high", "has_external_funding": "yes", "job_creation_potential": "high",
            "projected_inclusion": "above_50", "scalability_plan": "clear_plan",
            "market_scale_potential": "large_growing", "social_impact_contribution": "high",
            "supplier_involvement": "direct_engagement", "environmental_impact": "high",
            "business_model_uniqueness": "high", "customer_value_proposition": "high",
            "competitive_advantage_strength": "high",
        }
        card = score("acceleration", answers, pointer, Policy())
        assert card.total_score == 100
        assert set(card.category_scores.values()) == {20}
        assert card.is_eligible


# ---------------------------------------------------------------------------
# Structured failures
# ---------------------------------------------------------------------------


class TestScoringErrors:
    def test_missing_answer_is_named(self, pointer):
        answers = foundation_answers()
        del answers["customer_count"]
        err = score("foundation", answers, pointer, Policy())
        assert isinstance(err, ScoringError)
        assert err.reason == "missing_answer"
        assert err.field == "customer_count"

    def test_unmatched_option(self, pointer):
        err = score("foundation", foundation_answers(relative_pricing="free"), pointer, Policy())
        assert err.reason == "unmatched_option"
        assert err.field == "relative_pricing"

    def test_invalid_number(self, pointer):
        err = score("foundation", foundation_answers(customer_count="lots"), pointer, Policy())
        assert err.reason == "invalid_answer"

    def test_no_configuration(self):
        err = score("foundation", foundation_answers(), None, Policy())
        assert err.reason == "config_not_found"

    def test_unknown_track(self, pointer):
        err = score("growth", foundation_answers(), pointer, Policy())
        assert err.reason == "unknown_track"

    def test_optional_criterion_scores_zero_when_blank(self):
        criterion = CriterionSpec(
            track="foundation", category="Extra", name="Website", answer_keys=["website"],
            max_points=3, required=False, logic={"kind": "enum", "options": {"yes": 3, "no": 0}},
        )
        assert score_criterion(criterion, {}) == 0.0

    def test_points_capped_at_max(self):
        criterion = CriterionSpec(
            track="foundation", category="Extra", name="Staff", answer_keys=["staff"], max_points=4,
            logic={"kind": "threshold", "bands": [{"value": 1, "points": 10}]},
        )
        assert score_criterion(criterion, {"staff": 5}) == 4


# ---------------------------------------------------------------------------
# Mandatory eligibility
# ---------------------------------------------------------------------------


class TestMandatoryFlags:
    def test_all_met(self):
        assert check_mandatory(foundation_answers(), TrackPolicy()).all_met

    def test_under_age(self):
        flags = check_mandatory(foundation_answers(applicant_age=17), TrackPolicy())
        assert flags.age is False
        assert flags.registration is True

    def test_missing_input_fails_flag_without_error(self):
        answers = foundation_answers()
        del answers["years_operational"]
        assert check_mandatory(answers, TrackPolicy()).age is False

    def test_revenue_floor_per_track(self):
        acceleration = Policy().track("acceleration")
        assert check_mandatory(foundation_answers(revenue_last_year=2_500_000), acceleration).revenue is False
        assert check_mandatory(foundation_answers(revenue_last_year=2_500_000), TrackPolicy()).revenue is True

    def test_short_narrative(self):
        flags = check_mandatory(foundation_answers(problem_solved="Too short."), TrackPolicy())
        assert flags.impact is False

    def test_narrative_must_exceed_minimum_length(self):
        policy = TrackPolicy(min_narrative_length=50)
        assert check_mandatory(foundation_answers(problem_solved="x" * 50), policy).impact is False
        assert check_mandatory(foundation_answers(problem_solved="x" * 51), policy).impact is True

    def test_unregistered(self):
        flags = check_mandatory(foundation_answers(is_registered="no"), TrackPolicy())
        assert flags.registration is False

    def test_ineligible_despite_full_score(self, pointer):
        card = score("foundation", foundation_answers(has_business_plan="no"), pointer, Policy())
        assert card.total_score == 100
        assert card.is_eligible is False
