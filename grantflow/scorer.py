"""Application scoring engine.

Architecture:
  - Each ScoringCriterion carries a tagged-union scoring logic:
      * ``threshold``: ordered numeric bands, first satisfied band wins
        (``revenue > 2M -> 10``). Several answer keys are summed first, so
        "women + youth + PWD employees" is one criterion.
      * ``enum``: direct option -> points lookup. Booleans normalise to
        ``yes`` / ``no``.
  - ``score()`` takes an explicit ActiveConfigurationPointer snapshot and never
    touches the database, so the same answers and the same snapshot always give
    the same ScoreCard.
  - Mandatory eligibility (age, registration, revenue, business plan, impact
    narrative) is evaluated separately from the weighted score and ANDed with
    the pass threshold.
  - Failures come back as ``ScoringError`` values rather than exceptions so a
    caller can tell "missing required answer" from "configuration not found".
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from grantflow.settings import Policy, TrackPolicy

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Scoring logic (tagged union)
# ---------------------------------------------------------------------------


class Threshold(BaseModel):
    value: float
    points: float
    inclusive: bool = True

    def matches(self, amount: float) -> bool:
        return amount >= self.value if self.inclusive else amount > self.value


class ThresholdLogic(BaseModel):
    kind: Literal["threshold"] = "threshold"
    bands: list[Threshold]
    default: float = 0.0


class EnumLogic(BaseModel):
    kind: Literal["enum"] = "enum"
    options: dict[str, float]


ScoringLogic = Annotated[Union[ThresholdLogic, EnumLogic], Field(discriminator="kind")]


class CriterionSpec(BaseModel):
    id: int | None = None
    track: str
    category: str
    name: str
    answer_keys: list[str]
    max_points: float
    required: bool = True
    sort_order: int = 0
    logic: ScoringLogic


class ActiveConfigurationPointer(BaseModel):
    """Immutable snapshot of a scoring configuration, fetched once per call."""

    model_config = {"frozen": True}

    id: int | None = None
    name: str
    version: str = "1.0"
    pass_threshold: float
    total_max_score: float = 100.0
    criteria: list[CriterionSpec] = Field(default_factory=list)

    def for_track(self, track: str) -> list[CriterionSpec]:
        return sorted((c for c in self.criteria if c.track == track), key=lambda c: c.sort_order)


class MandatoryFlags(BaseModel):
    age: bool = False
    registration: bool = False
    revenue: bool = False
    business_plan: bool = False
    impact: bool = False

    @property
    def all_met(self) -> bool:
        return self.age and self.registration and self.revenue and self.business_plan and self.impact


class ScoreCard(BaseModel):
    track: str
    config_id: int | None
    category_scores: dict[str, float]
    criterion_scores: dict[str, float]
    total_score: float
    mandatory: MandatoryFlags
    is_eligible: bool


@dataclass(frozen=True)
class ScoringError:
    reason: str  # missing_answer | invalid_answer | unmatched_option | config_not_found | unknown_track
    field: str | None = None
    detail: str = ""


# ---------------------------------------------------------------------------
# Answer normalisation
# ---------------------------------------------------------------------------


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").strip())
        except ValueError:
            return None
    return None


def _to_option(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value).strip().lower()


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"yes", "true", "1", "y"}
    return False


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------


def _score_threshold(criterion: CriterionSpec, logic: ThresholdLogic, answers: dict[str, Any]) -> float | ScoringError:
    amount = 0.0
    for key in criterion.answer_keys:
        raw = answers.get(key)
        if _is_blank(raw):
            if criterion.required:
                return ScoringError("missing_answer", key)
            continue
        number = to_number(raw)
        if number is None:
            return ScoringError("invalid_answer", key, f"expected a number, got {raw!r}")
        amount += number
    for band in logic.bands:
        if band.matches(amount):
            return band.points
    return logic.default


def _score_enum(criterion: CriterionSpec, logic: EnumLogic, answers: dict[str, Any]) -> float | ScoringError:
    key = criterion.answer_keys[0]
    raw = answers.get(key)
    if _is_blank(raw):
        return ScoringError("missing_answer", key) if criterion.required else 0.0
    option = _to_option(raw)
    options = {k.lower(): v for k, v in logic.options.items()}
    if option not in options:
        return ScoringError("unmatched_option", key, f"{option!r} is not one of {sorted(options)}")
    return options[option]


def score_criterion(criterion: CriterionSpec, answers: dict[str, Any]) -> float | ScoringError:
    logic = criterion.logic
    if isinstance(logic, ThresholdLogic):
        points = _score_threshold(criterion, logic, answers)
    else:
        points = _score_enum(criterion, logic, answers)
    if isinstance(points, ScoringError):
        return points
    return min(points, criterion.max_points)


def check_mandatory(answers: dict[str, Any], policy: TrackPolicy) -> MandatoryFlags:
    age = to_number(answers.get("applicant_age"))
    years = to_number(answers.get("years_operational"))
    age_ok = (
        age is not None
        and age >= policy.min_applicant_age
        and (policy.max_applicant_age is None or age <= policy.max_applicant_age)
        and years is not None
        and years >= policy.min_years_operational
    )

    registered = _truthy(answers.get("is_registered"))
    registration_ok = registered or not policy.requires_registration

    revenue = to_number(answers.get("revenue_last_year"))
    revenue_ok = (
        revenue is not None
        and revenue >= policy.revenue_floor
        and (policy.revenue_ceiling is None or revenue <= policy.revenue_ceiling)
    )

    plan_ok = _truthy(answers.get("has_financial_records")) or _truthy(answers.get("has_business_plan"))

    narratives = [answers.get("business_description"), answers.get("problem_solved")]
    impact_ok = all(
        isinstance(text, str) and len(text.strip()) > policy.min_narrative_length for text in narratives
    )

    return MandatoryFlags(
        age=age_ok, registration=registration_ok, revenue=revenue_ok,
        business_plan=plan_ok, impact=impact_ok,
    )


def score(
    track: str,
    answers: dict[str, Any],
    config: ActiveConfigurationPointer | None,
    policy: Policy,
) -> ScoreCard | ScoringError:
    """Score *answers* for *track* against a configuration snapshot."""
    if config is None:
        return ScoringError("config_not_found", detail="no scoring configuration supplied")
    track_policy = policy.track(track)
    if track_policy is None:
        return ScoringError("unknown_track", "track", f"no eligibility policy for {track!r}")
    criteria = config.for_track(track)
    if not criteria:
        return ScoringError("config_not_found", "track", f"configuration {config.name!r} has no {track} criteria")

    category_scores: dict[str, float] = {}
    criterion_scores: dict[str, float] = {}
    for criterion in criteria:
        points = score_criterion(criterion, answers)
        if isinstance(points, ScoringError):
            return points
        criterion_scores[criterion.name] = points
        category_scores[criterion.category] = category_scores.get(criterion.category, 0.0) + points

    total = round(min(sum(category_scores.values()), config.total_max_score), 2)
    mandatory = check_mandatory(answers, track_policy)
    return ScoreCard(
        track=track,
        config_id=config.id,
        category_scores=category_scores,
        criterion_scores=criterion_scores,
        total_score=total,
        mandatory=mandatory,
        is_eligible=total >= config.pass_threshold and mandatory.all_met,
    )


# ---------------------------------------------------------------------------
# Default rubric (seeded by db.init_db when no configuration exists)
# ---------------------------------------------------------------------------


def _bands(*pairs: tuple[float, float], exclusive_first: bool = True, default: float = 0.0) -> dict[str, Any]:
    bands = [
        {"value": value, "points": points, "inclusive": not (exclusive_first and i == 0)}
        for i, (value, points) in enumerate(pairs)
    ]
    return {"kind": "threshold", "bands": bands, "default": default}


def _options(**options: float) -> dict[str, Any]:
    return {"kind": "enum", "options": options}


DEFAULT_PASS_THRESHOLD = 60.0

DEFAULT_CRITERIA: list[dict[str, Any]] = [
    # Foundation: Commercial Viability 30, Business Model 10, Market Potential 30, Social Impact 30
    {"track": "foundation", "category": "Commercial Viability", "name": "Revenue Last Year",
     "answer_keys": ["revenue_last_year"], "max_points": 10,
     "logic": _bands((2_000_000, 10), (1_000_000, 5), (500_000, 2))},
    {"track": "foundation", "category": "Commercial Viability", "name": "Customer Base",
     "answer_keys": ["customer_count"], "max_points": 10,
     "logic": _bands((400, 10), (200, 5), (1, 2))},
    {"track": "foundation", "category": "Commercial Viability", "name": "External Funding Received",
     "answer_keys": ["has_external_funding"], "max_points": 5,
     "logic": _options(yes=1, no=5)},
    {"track": "foundation", "category": "Commercial Viability", "name": "Digitization",
     "answer_keys": ["uses_digital_tools"], "max_points": 5,
     "logic": _options(yes=5, no=1)},
    {"track": "foundation", "category": "Business Model", "name": "Business Model Innovation",
     "answer_keys": ["business_model_innovation"], "max_points": 10,
     "logic": _options(new=10, innovative_concept=10, relatively_new=5, relatively_innovative=5, existing=2)},
    {"track": "foundation", "category": "Market Potential", "name": "Relative Pricing",
     "answer_keys": ["relative_pricing"], "max_points": 7,
     "logic": _options(lower=7, equal=4, higher=1)},
    {"track": "foundation", "category": "Market Potential", "name": "Product Differentiation",
     "answer_keys": ["product_differentiation"], "max_points": 8,
     "logic": _options(new=8, relatively_new=5, existing=2, similar=2)},
    {"track": "foundation", "category": "Market Potential", "name": "Threat of Substitutes",
     "answer_keys": ["threat_of_substitutes"], "max_points": 7,
     "logic": _options(low=7, moderate=4, high=0)},
    {"track": "foundation", "category": "Market Potential", "name": "Ease of Market Entry",
     "answer_keys": ["ease_of_market_entry"], "max_points": 8,
     "logic": _options(low=8, moderate=5, high=1)},
    {"track": "foundation", "category": "Social Impact", "name": "Environmental Impact",
     "answer_keys": ["environmental_impact"], "max_points": 10,
     "logic": _options(clearly_defined=10, neutral=5, minimal=5, not_defined=0)},
    {"track": "foundation", "category": "Social Impact", "name": "Special Groups Employed",
     "answer_keys": ["women_employees", "youth_employees", "pwd_employees"], "max_points": 10,
     "logic": _bands((10, 10), (6, 6), (5, 3))},
    {"track": "foundation", "category": "Social Impact", "name": "Business Compliance",
     "answer_keys": ["business_compliance"], "max_points": 10,
     "logic": _options(fully_compliant=10, partially_compliant=5, not_clear=1)},
    # Acceleration: five categories of 20
    {"track": "acceleration", "category": "Revenues & Growth", "name": "Revenue Last Year",
     "answer_keys": ["revenue_last_year"], "max_points": 5,
     "logic": _bands((5_000_000, 5), (3_000_000, 3), default=1)},
    {"track": "acceleration", "category": "Revenues & Growth", "name": "Average Annual Revenue Growth",
     "answer_keys": ["average_annual_revenue_growth"], "max_points": 5,
     "logic": _options(above_20=5, **{"10_20": 3}, below_10=1)},
    {"track": "acceleration", "category": "Revenues & Growth", "name": "Future Sales Growth",
     "answer_keys": ["future_sales_growth"], "max_points": 5,
     "logic": _options(high=5, moderate=3, low=1)},
    {"track": "acceleration", "category": "Revenues & Growth", "name": "External Funding Received",
     "answer_keys": ["has_external_funding"], "max_points": 5,
     "logic": _options(yes=5, no=0)},
    {"track": "acceleration", "category": "Impact Potential", "name": "Job Creation Potential",
     "answer_keys": ["job_creation_potential"], "max_points": 10,
     "logic": _options(high=10, moderate=5, low=2)},
    {"track": "acceleration", "category": "Impact Potential", "name": "Projected Inclusion",
     "answer_keys": ["projected_inclusion"], "max_points": 10,
     "logic": _options(above_50=10, **{"30_50": 5}, below_30=2)},
    {"track": "acceleration", "category": "Scalability", "name": "Scalability Plan",
     "answer_keys": ["scalability_plan"], "max_points": 10,
     "logic": _options(clear_plan=10, some_idea=5, no_plan=0)},
    {"track": "acceleration", "category": "Scalability", "name": "Market Scale Potential",
     "answer_keys": ["market_scale_potential"], "max_points": 10,
     "logic": _options(large_growing=10, stable=5, small_niche=2)},
    {"track": "acceleration", "category": "Social & Environmental Impact", "name": "Social Impact Contribution",
     "answer_keys": ["social_impact_contribution"], "max_points": 7,
     "logic": _options(high=7, moderate=4, none=0)},
    {"track": "acceleration", "category": "Social & Environmental Impact", "name": "Supplier Involvement",
     "answer_keys": ["supplier_involvement"], "max_points": 6,
     "logic": _options(direct_engagement=6, network_engagement=3, network_based=3, none=1)},
    {"track": "acceleration", "category": "Social & Environmental Impact", "name": "Environmental Impact",
     "answer_keys": ["environmental_impact"], "max_points": 7,
     "logic": _options(high=7, clearly_defined=7, moderate=4, minimal=4, low=0, not_defined=0)},
    {"track": "acceleration", "category": "Business Model", "name": "Business Model Uniqueness",
     "answer_keys": ["business_model_uniqueness"], "max_points": 7,
     "logic": _options(high=7, moderate=3, low=1)},
    {"track": "acceleration", "category": "Business Model", "name": "Customer Value Proposition",
     "answer_keys": ["customer_value_proposition"], "max_points": 7,
     "logic": _options(high=7, moderate=3, low=1)},
    {"track": "acceleration", "category": "Business Model", "name": "Competitive Advantage Strength",
     "answer_keys": ["competitive_advantage_strength"], "max_points": 6,
     "logic": _options(high=6, moderate=3, low=1)},
]


def default_criteria() -> list[CriterionSpec]:
    return [
        CriterionSpec(sort_order=i, **entry)
        for i, entry in enumerate(DEFAULT_CRITERIA)
    ]
