"""Pydantic request/response schemas shared by the library API, HTTP adapter and CLI."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from grantflow.errors import Unauthorized
from grantflow.scorer import CriterionSpec

Role = Literal["applicant", "admin", "oversight", "technical_reviewer", "reviewer_1", "reviewer_2"]
Track = Literal["foundation", "acceleration"]


class Actor(BaseModel):
    """The authenticated caller, as handed over by the auth layer."""

    model_config = {"frozen": True}

    actor_id: str
    role: Role

    @field_validator("actor_id")
    @classmethod
    def _strip_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("actor_id must not be empty")
        return v

    def require(self, *roles: str, action: str) -> None:
        if self.role not in roles:
            raise Unauthorized(self.actor_id, self.role, action)


SYSTEM_ACTOR = Actor(actor_id="system", role="admin")


class ApplicationSubmission(BaseModel):
    user_id: str
    business_id: str = ""
    track: Track
    answers: dict[str, Any] = Field(default_factory=dict)


class ConfigurationCreate(BaseModel):
    name: str
    description: str = ""
    version: str = "1.0"
    pass_threshold: float = Field(60.0, ge=0, le=100)
    total_max_score: float = Field(100.0, gt=0)
    criteria: list[CriterionSpec]
    activate: bool = False


class ThresholdUpdate(BaseModel):
    pass_threshold: float = Field(..., ge=0, le=100)
    reconcile: bool = False


class ReviewerCreate(BaseModel):
    reviewer_id: str
    role: Role
    display_name: str = ""


class ReviewerActiveUpdate(BaseModel):
    is_active: bool


class AssignRequest(BaseModel):
    reviewer_id: str | None = None


class ReviewScoreIn(BaseModel):
    score: float = Field(..., ge=0, le=100)
    notes: str = ""
    override: bool = False


class LockRequest(BaseModel):
    reason: str = ""


class DDItemIn(BaseModel):
    phase: int = Field(..., ge=1, le=2)
    criterion: str
    score: int
    comments: str = ""


class PrimaryReviewIn(BaseModel):
    phase: int = Field(..., ge=1, le=2)
    final_score: float | None = None
    notes: str = ""
    validator_id: str | None = None


class ValidatorDecisionIn(BaseModel):
    action: Literal["approve", "query"]
    comments: str = ""


class FinalDecisionIn(BaseModel):
    verdict: Literal["pass", "fail"]
    reason: str


class JustificationIn(BaseModel):
    justification: str


class ReconcileRequest(BaseModel):
    new_threshold: float | None = Field(None, ge=0, le=100)
    previous_threshold: float | None = Field(None, ge=0, le=100)
