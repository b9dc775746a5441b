from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from grantflow.utils import utc_now

TRACKS = ("foundation", "acceleration")

APPLICATION_STATUSES = (
    "submitted", "under_review", "pending_senior_review", "scoring_phase",
    "finalist", "approved", "rejected",
)

ROLES = ("applicant", "admin", "oversight", "technical_reviewer", "reviewer_1", "reviewer_2")

DD_STATUSES = ("pending", "in_progress", "awaiting_approval", "approved", "queried", "auto_reassigned")

# Per-phase progress inside a due-diligence record.
PHASE_STATUSES = ("pending", "in_progress", "submitted", "completed", "skipped")


class Base(DeclarativeBase):
    pass


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    business_id: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    track: Mapped[str] = mapped_column(String(20), nullable=False)  # foundation | acceleration
    status: Mapped[str] = mapped_column(String(30), default="submitted", nullable=False)
    answers_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    is_observation_only: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    marked_for_revisit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    eligibility: Mapped[EligibilityResult | None] = relationship(
        back_populates="application", uselist=False, cascade="all, delete-orphan",
    )
    due_diligence: Mapped[DueDiligenceRecord | None] = relationship(
        back_populates="application", uselist=False, cascade="all, delete-orphan",
    )
    history: Mapped[list[EvaluationHistory]] = relationship(
        back_populates="application", cascade="all, delete-orphan", order_by="EvaluationHistory.id",
    )


class ScoringConfiguration(Base):
    __tablename__ = "scoring_configurations"
    __table_args__ = (
        # At most one active configuration.
        Index(
            "uq_scoring_configurations_active", "is_active", unique=True,
            sqlite_where=text("is_active = 1"), postgresql_where=text("is_active"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    version: Mapped[str] = mapped_column(String(30), default="1.0", nullable=False)
    pass_threshold: Mapped[float] = mapped_column(Float, default=60.0, nullable=False)
    total_max_score: Mapped[float] = mapped_column(Float, default=100.0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    criteria: Mapped[list[ScoringCriterion]] = relationship(
        back_populates="configuration", cascade="all, delete-orphan",
        order_by="ScoringCriterion.sort_order",
    )


class ScoringCriterion(Base):
    __tablename__ = "scoring_criteria"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    config_id: Mapped[int] = mapped_column(Integer, ForeignKey("scoring_configurations.id"), nullable=False)
    track: Mapped[str] = mapped_column(String(20), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    answer_keys_json: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    logic_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)  # tagged union, see scorer
    max_points: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    configuration: Mapped[ScoringConfiguration] = relationship(back_populates="criteria")


class EligibilityResult(Base):
    __tablename__ = "eligibility_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("applications.id"), unique=True, nullable=False,
    )
    scoring_config_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("scoring_configurations.id"), nullable=True,
    )

    age_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    registration_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revenue_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    business_plan_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    impact_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    category_scores_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    criterion_scores_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    total_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    is_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    evaluated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    reviewer1_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reviewer1_assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reviewer1_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    reviewer1_notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    reviewer1_scored_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    reviewer2_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reviewer2_assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reviewer2_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    reviewer2_notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    reviewer2_scored_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    reviewer2_overrode_reviewer1: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    score_disparity: Mapped[float | None] = mapped_column(Float, nullable=True)
    qualifies_for_due_diligence: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    is_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    locked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    lock_reason: Mapped[str] = mapped_column(Text, default="", nullable=False)

    evaluation_notes: Mapped[str] = mapped_column(Text, default="", nullable=False)  # append-only
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    application: Mapped[Application] = relationship(back_populates="eligibility")
    configuration: Mapped[ScoringConfiguration | None] = relationship()


class EvaluationHistory(Base):
    __tablename__ = "evaluation_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(Integer, ForeignKey("applications.id"), nullable=False)
    previous_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    new_score: Mapped[float] = mapped_column(Float, nullable=False)
    previous_eligibility: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    new_eligibility: Mapped[bool] = mapped_column(Boolean, nullable=False)
    previous_config_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_config_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    changed_by: Mapped[str] = mapped_column(String(64), default="system", nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    application: Mapped[Application] = relationship(back_populates="history")


class Reviewer(Base):
    """Assignment pool member: tier reviewers plus admin/oversight staff."""

    __tablename__ = "reviewers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reviewer_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(30), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class DueDiligenceRecord(Base):
    __tablename__ = "due_diligence_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("applications.id"), unique=True, nullable=False,
    )
    current_phase: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    dd_status: Mapped[str] = mapped_column(String(30), default="pending", nullable=False)

    phase1_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    phase1_status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    phase1_notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    phase2_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    phase2_status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    phase2_notes: Mapped[str] = mapped_column(Text, default="", nullable=False)

    primary_reviewer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    primary_assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    primary_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    primary_final_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    validator_reviewer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    validator_action: Mapped[str | None] = mapped_column(String(20), nullable=True)  # approved | queried
    validator_comments: Mapped[str] = mapped_column(Text, default="", nullable=False)
    validator_action_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    approval_deadline: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    is_oversight_initiated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    oversight_justification: Mapped[str] = mapped_column(Text, default="", nullable=False)
    oversight_admin_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    oversight_flagged_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    final_verdict: Mapped[str | None] = mapped_column(String(10), nullable=True)  # pass | fail
    final_reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    final_decided_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    final_decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    application: Mapped[Application] = relationship(back_populates="due_diligence")
    items: Mapped[list[DueDiligenceItem]] = relationship(
        back_populates="record", cascade="all, delete-orphan", order_by="DueDiligenceItem.id",
    )


class DueDiligenceItem(Base):
    __tablename__ = "due_diligence_items"
    __table_args__ = (
        UniqueConstraint("record_id", "phase", "criterion", name="uq_due_diligence_items_criterion"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    record_id: Mapped[int] = mapped_column(Integer, ForeignKey("due_diligence_records.id"), nullable=False)
    phase: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    criterion: Mapped[str] = mapped_column(String(200), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)  # 0 | 1 | 3 | 5
    comments: Mapped[str] = mapped_column(Text, default="", nullable=False)
    updated_by: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    record: Mapped[DueDiligenceRecord] = relationship(back_populates="items")
