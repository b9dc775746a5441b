"""Due-diligence criteria catalogue.

Phase 1 is the desk review of submitted evidence, phase 2 the physical
verification visit. Every criterion is scored 0, 1, 3 or 5 by the primary
reviewer; a phase can only be submitted once each of its criteria has a score.
The catalogue can be replaced through the ``dd_criteria`` key of the policy
file.
"""
from __future__ import annotations

from dataclasses import dataclass

ALLOWED_ITEM_SCORES = (0, 1, 3, 5)

DEFAULT_DD_CRITERIA: dict[int, dict[str, list[str]]] = {
    1: {
        "Business Legitimacy": [
            "Registration Status",
            "Ownership Structure",
            "Physical Address",
            "Years in Operation",
        ],
        "Operational Fit": [
            "Sector Alignment",
            "Business Model Clarity",
            "Operational Capacity",
            "Staffing Structure",
        ],
        "Market & Revenue": [
            "Market Understanding",
            "Customer Base Clarity",
            "Competition Awareness",
            "Revenue Consistency",
        ],
        "Financial Documentation": [
            "Bank Statements",
            "Mpesa Statements",
            "Bookkeeping Records",
            "Loan Disclosure",
            "Financial Accuracy",
        ],
        "ESG & Safeguards": [
            "Environmental Risk",
            "Social Practices",
            "Governance Basics",
        ],
    },
    2: {
        "Physical Verification": [
            "Premises Existence",
            "Operational Activity",
            "Safety & Cleanliness",
            "Business Continuity Evidence",
        ],
        "Operations Validation": [
            "Machinery/Tools",
            "Inventory Levels",
            "Production Capacity Reality",
            "Workforce Presence",
            "Operational Workflow",
        ],
        "Financial Validation": [
            "Sales Records",
            "Mpesa/POS Activity",
            "Bank Activity",
            "Loan Verification",
            "Cashflow Stability",
        ],
        "Governance and HR": [
            "Staff Interviews",
            "Founder Involvement",
            "Role Clarity",
        ],
        "ESG & Safeguards": [
            "Environmental Practices",
            "Worker Safety",
            "Inclusivity",
        ],
    },
}


@dataclass(frozen=True)
class DDCriterion:
    phase: int
    category: str
    name: str


def criteria_for_phase(catalog: dict[int, dict[str, list[str]]], phase: int) -> list[DDCriterion]:
    """Return the phase's criteria in catalogue order."""
    return [
        DDCriterion(phase=phase, category=category, name=name)
        for category, names in catalog.get(phase, {}).items()
        for name in names
    ]


def find_criterion(catalog: dict[int, dict[str, list[str]]], phase: int, name: str) -> DDCriterion | None:
    for criterion in criteria_for_phase(catalog, phase):
        if criterion.name == name:
            return criterion
    return None


def phase_max_score(catalog: dict[int, dict[str, list[str]]], phase: int) -> int:
    return len(criteria_for_phase(catalog, phase)) * max(ALLOWED_ITEM_SCORES)
