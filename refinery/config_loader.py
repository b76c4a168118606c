"""
Configuration loader for REFINERY.
Merges built-in defaults with per-repo .refinery/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

AutonomyLevel = Literal["advisory", "pr_only", "auto_merge", "auto_release"]


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class DefaultsConfig(BaseModel):
    autonomy_level: AutonomyLevel = "pr_only"
    change_budget_per_window: int = 5
    window_hours: int = 24
    cooldown_hours: float = 72
    min_confidence_margin: float = 0.25
    min_consecutive_cycles: int = 2
    max_loc_per_pr: int = 500


class StorageConfig(BaseModel):
    base_path: str = "data"
    source_path: str = ""


class ConsensusConfig(BaseModel):
    similarity_threshold: float = 0.3


class TriageConfig(BaseModel):
    cluster_threshold: float = 0.15
    escalation_agreement: float = 0.33
    escalation_confidence: float = 0.5
    scorecard_weights: dict[str, float] = Field(
        default_factory=lambda: {
            "security": 0.3,
            "reliability": 0.25,
            "devex": 0.2,
            "performance": 0.15,
        }
    )


class OscillationConfig(BaseModel):
    adr_match_threshold: float = 0.75
    reversion_threshold: float = 0.7
    related_adr_threshold: float = 0.5
    confirmation_threshold: float = 0.6


class RoutingConfig(BaseModel):
    multi_model_threshold: Literal["critical", "high"] = "critical"
    architect: str = "anthropic/claude-opus-4-1"
    workhorse: str = "anthropic/claude-sonnet-4-5"
    fast: str = "gemini/gemini-3-flash-preview"
    architect_pair: list[str] = Field(default_factory=list)
    max_tokens_per_session: int = 200_000
    max_dollars_per_session: float = 10.0


class DeliberationConfig(BaseModel):
    temperature: float = 0.3
    max_tokens: int = 8192
    max_workers: int = 2


class RefineryConfig(BaseModel):
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    consensus: ConsensusConfig = Field(default_factory=ConsensusConfig)
    triage: TriageConfig = Field(default_factory=TriageConfig)
    oscillation: OscillationConfig = Field(default_factory=OscillationConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    deliberation: DeliberationConfig = Field(default_factory=DeliberationConfig)

    @property
    def data_path(self) -> Path:
        return Path(self.storage.base_path).expanduser().resolve()

    @property
    def source_path(self) -> Path:
        if self.storage.source_path:
            return Path(self.storage.source_path).expanduser().resolve()
        return Path(__file__).resolve().parent.parent


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(repo_path: Path | None = None) -> RefineryConfig:
    """
    Load config by merging:
      1. Built-in defaults (refinery/config.yaml)
      2. Repo-level overrides (<repo>/.refinery/config.yaml)
      3. An explicit file named by REFINERY_CONFIG
      4. Environment overrides for storage paths
    """
    # 1. Built-in defaults
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    # 2. Repo overrides
    if repo_path:
        repo_config = repo_path / ".refinery" / "config.yaml"
        if repo_config.exists():
            base = _deep_merge(base, _read_yaml(repo_config))

    # 3. Explicit config file
    explicit = os.environ.get("REFINERY_CONFIG")
    if explicit and Path(explicit).exists():
        base = _deep_merge(base, _read_yaml(Path(explicit)))

    # 4. Env overrides
    storage = base.setdefault("storage", {})
    if os.environ.get("REFINERY_DATA_PATH"):
        storage["base_path"] = os.environ["REFINERY_DATA_PATH"]
    elif repo_path and not Path(storage.get("base_path", "data")).is_absolute():
        storage["base_path"] = str(repo_path / storage.get("base_path", "data"))
    if os.environ.get("REFINERY_SOURCE_PATH"):
        storage["source_path"] = os.environ["REFINERY_SOURCE_PATH"]

    return RefineryConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which provider API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
