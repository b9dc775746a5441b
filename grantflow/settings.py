from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from grantflow.dd_criteria import DEFAULT_DD_CRITERIA


def _resolve_project_root() -> Path:
    override = os.getenv("GRANTFLOW_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _resolve_policy_file() -> Path:
    override = os.getenv("GRANTFLOW_POLICY_FILE", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_project_root() / "config" / "policy.yaml"


class TrackPolicy(BaseModel):
    """Mandatory-eligibility rules for one track."""

    min_applicant_age: int = 18
    max_applicant_age: int | None = None
    min_years_operational: float = 1
    requires_registration: bool = True
    revenue_floor: float = 500_000
    revenue_ceiling: float | None = None
    # Narrative fields must be longer than this many characters.
    min_narrative_length: int = 50


def _default_tracks() -> dict[str, TrackPolicy]:
    return {
        "foundation": TrackPolicy(),
        "acceleration": TrackPolicy(min_years_operational=2, revenue_floor=3_000_000),
    }


class Policy(BaseModel):
    """Review-pipeline policy knobs loaded from the YAML policy file."""

    approval_window_hours: float = 12
    dd_threshold: float = 60
    score_disparity_threshold: float = 10
    override_delta: float = 0
    min_reason_length: int = 10
    min_oversight_justification: int = 20
    observation_country: str = "kenya"
    observation_revenue_floor: float = 500_000
    tracks: dict[str, TrackPolicy] = Field(default_factory=_default_tracks)
    dd_criteria: dict[int, dict[str, list[str]]] = Field(
        default_factory=lambda: {phase: dict(groups) for phase, groups in DEFAULT_DD_CRITERIA.items()}
    )

    def track(self, name: str) -> TrackPolicy | None:
        return self.tracks.get(name)


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")
    database_path: Path = Field(default_factory=lambda: _resolve_project_root() / "data" / "grantflow.db")
    policy_file: Path = Field(default_factory=_resolve_policy_file)

    api_host: str = "127.0.0.1"
    api_port: int = 8001

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        override = os.getenv("GRANTFLOW_DATABASE_URL", "").strip()
        if override:
            return override
        return f"sqlite:///{self.database_path}"

    @property
    def uses_default_database(self) -> bool:
        return not os.getenv("GRANTFLOW_DATABASE_URL", "").strip()

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_policy(self) -> Policy:
        raw = self.load_yaml(self.policy_file)
        tracks = raw.pop("tracks", None) or {}
        policy = Policy.model_validate(raw)
        # Partial track overrides merge onto the defaults.
        for name, overrides in tracks.items():
            base = policy.tracks.get(name, TrackPolicy())
            policy.tracks[name] = base.model_copy(update=dict(overrides or {}))
        return policy


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=1)
def get_policy() -> Policy:
    return get_settings().load_policy()
