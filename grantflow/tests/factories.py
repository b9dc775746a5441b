"""Answer sets for the default scoring rubric."""
from __future__ import annotations

from typing import Any


def foundation_answers(**overrides: Any) -> dict[str, Any]:
    """Answers that score 100 on the default foundation rubric and meet every mandatory rule."""
    answers: dict[str, Any] = {
        "applicant_age": 34,
        "years_operational": 3,
        "is_registered": "yes",
        "has_business_plan": "yes",
        "business_description": "We process locally grown cassava into flour for bakeries in three counties.",
        "problem_solved": "Smallholder farmers lose most of their harvest to spoilage; we buy and process it on site.",
        "country": "uganda",
        "revenue_last_year": 2_500_000,
        "customer_count": 500,
        "has_external_funding": "no",
        "uses_digital_tools": "yes",
        "business_model_innovation": "new",
        "relative_pricing": "lower",
        "product_differentiation": "new",
        "threat_of_substitutes": "low",
        "ease_of_market_entry": "low",
        "environmental_impact": "clearly_defined",
        "women_employees": 4,
        "youth_employees": 4,
        "pwd_employees": 4,
        "business_compliance": "fully_compliant",
    }
    answers.update(overrides)
    return answers


def foundation_answers_65(**overrides: Any) -> dict[str, Any]:
    """Mandatory rules met, total score exactly 65 on the default rubric."""
    return foundation_answers(
        customer_count=0,                      # -10
        business_model_innovation="existing",  # -8
        relative_pricing="higher",             # -6
        threat_of_substitutes="high",          # -7
        uses_digital_tools="no",               # -4
        **overrides,
    )
