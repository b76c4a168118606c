"""
REFINERY Domain Models

Pydantic records for everything the engine persists or passes
between engines: findings, consensus, proposals, decisions, policy,
governance, scorecards and feedback.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

RiskLevel = Literal["low", "medium", "high", "critical"]
EvidenceType = Literal["url", "quote", "spec_reference"]
EvidenceQuality = Literal["A", "B", "C"]

ProposalCategory = Literal["behavioral", "refactor", "docs", "prompt_only", "security", "dependency"]
ProposalStatus = Literal[
    "draft", "triaged", "approved", "in_progress", "pr_open", "testing",
    "merged", "released", "rejected", "rolled_back",
]
ADRStatus = Literal["accepted", "superseded"]
PolicyCategory = Literal["scope", "budget", "risk_tier", "autonomy"]
GovernanceTargetType = Literal["proposal", "plan", "release", "adr_override", "pipeline"]

RISK_LEVELS: tuple[str, ...] = ("low", "medium", "high", "critical")
IMPACT_FIELDS: tuple[str, ...] = ("reliability", "security", "devex", "performance")


def risk_rank(level: str) -> int:
    return RISK_LEVELS.index(level) if level in RISK_LEVELS else 0


def max_risk(levels: list[str]) -> str:
    return max(levels, key=risk_rank) if levels else "low"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat()


def parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Research
# ---------------------------------------------------------------------------

class Evidence(BaseModel):
    type: EvidenceType = "quote"
    value: str
    quality: EvidenceQuality = "C"


class ExpectedImpact(BaseModel):
    reliability: float = Field(0.0, ge=-1.0, le=1.0)
    security: float = Field(0.0, ge=-1.0, le=1.0)
    devex: float = Field(0.0, ge=-1.0, le=1.0)
    performance: float = Field(0.0, ge=-1.0, le=1.0)

    def magnitude(self) -> float:
        """Sum of absolute component scores."""
        return sum(abs(getattr(self, f)) for f in IMPACT_FIELDS)


class RiskInfo(BaseModel):
    level: RiskLevel = "low"
    notes: str = ""


class Finding(BaseModel):
    """One claim from one perspective. Never mutated after storage."""
    model_config = {"frozen": True}

    claim: str
    recommendation: str
    expected_impact: ExpectedImpact = Field(default_factory=ExpectedImpact)
    risk: RiskInfo = Field(default_factory=RiskInfo)
    evidence: list[Evidence] = Field(default_factory=list)


class ResearchFeedEntry(BaseModel):
    feed_id: str = Field(default_factory=lambda: new_id("feed"))
    target: str
    perspective: str
    prompt_hash: str = ""
    findings: list[Finding] = Field(default_factory=list)
    confidence: float = 0.1
    pipeline_id: str | None = None
    created_at: str = Field(default_factory=now_iso)


class ConsensusFinding(BaseModel):
    model_config = {"frozen": True}

    claim: str
    recommendation: str
    supporting_perspectives: list[str]
    agreement_score: float = Field(ge=0.0, le=1.0)
    combined_confidence: float
    merged_impact: ExpectedImpact
    merged_evidence: list[Evidence] = Field(default_factory=list)
    risk_level: RiskLevel = "low"


class ConsensusResult(BaseModel):
    consensus_id: str = Field(default_factory=lambda: new_id("cons"))
    target: str
    findings: list[ConsensusFinding] = Field(default_factory=list)
    perspectives_consulted: list[str] = Field(default_factory=list)
    overall_agreement: float = 0.0
    feed_ids: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

class ImprovementProposal(BaseModel):
    proposal_id: str = Field(default_factory=lambda: new_id("prop"))
    target: str
    title: str
    claim: str
    recommendation: str
    category: ProposalCategory = "behavioral"
    status: ProposalStatus = "draft"
    risk_level: RiskLevel = "low"
    expected_impact: ExpectedImpact = Field(default_factory=ExpectedImpact)
    acceptance_criteria: list[str] = Field(default_factory=list)
    estimated_loc: int = 0
    priority: int = 0
    agreement_score: float = 0.0
    confidence: float = 0.0
    supporting_perspectives: list[str] = Field(default_factory=list)
    consensus_finding_refs: list[str] = Field(default_factory=list)
    adr_refs: list[str] = Field(default_factory=list)
    scorecard_baseline: dict[str, float] | None = None
    scorecard_target: dict[str, float] | None = None
    pipeline_id: str | None = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    @property
    def description(self) -> str:
        return f"{self.claim} {self.recommendation}"


class PolicyViolation(BaseModel):
    rule: str
    severity: Literal["blocking", "warning"]
    message: str


class PolicyEvaluation(BaseModel):
    allowed: bool = True
    requires_approval: bool = False
    violations: list[PolicyViolation] = Field(default_factory=list)


class OscillationCheck(BaseModel):
    allowed: bool = True
    reason: str = ""
    blocking_adr: str | None = None
    cooldown_remaining_hours: float = 0.0
    confidence_gap: float | None = None
    required_margin: float | None = None
    consecutive_confirmations: int = 0
    degrading_dimensions: list[str] = Field(default_factory=list)


class TriagedProposal(BaseModel):
    proposal: ImprovementProposal
    priority_score: float = Field(ge=0.0, le=1.0)
    risk_adjusted_impact: float = 0.0
    policy: PolicyEvaluation = Field(default_factory=PolicyEvaluation)
    oscillation: OscillationCheck = Field(default_factory=OscillationCheck)
    is_no_op: bool = False
    actionable: bool = False
    reason: str = ""


class Escalation(BaseModel):
    claim: str
    agreement_score: float
    combined_confidence: float
    message: str


class TriageResult(BaseModel):
    target: str
    consensus_id: str | None = None
    proposals: list[TriagedProposal] = Field(default_factory=list)
    escalations: list[Escalation] = Field(default_factory=list)
    budget_remaining: int = 0

    @property
    def actionable(self) -> list[TriagedProposal]:
        return [p for p in self.proposals if p.actionable]


# ---------------------------------------------------------------------------
# Decisions, policy, governance
# ---------------------------------------------------------------------------

class ADR(BaseModel):
    adr_id: str = Field(default_factory=lambda: new_id("adr"))
    target: str
    title: str
    context: str = ""
    decision: str
    rationale: str = ""
    consequences: list[str] = Field(default_factory=list)
    alternatives_considered: list[str] = Field(default_factory=list)
    confidence: float = Field(0.7, ge=0.0, le=1.0)
    status: ADRStatus = "accepted"
    cooldown_until: str
    min_confidence_margin: float = 0.25
    min_consecutive_cycles: int = 2
    supersedes: str | None = None
    superseded_by: str | None = None
    related_proposals: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


class ADRInput(BaseModel):
    target: str
    title: str
    decision: str
    context: str = ""
    rationale: str = ""
    consequences: list[str] = Field(default_factory=list)
    alternatives_considered: list[str] = Field(default_factory=list)
    confidence: float = Field(0.7, ge=0.0, le=1.0)
    related_proposals: list[str] = Field(default_factory=list)
    cooldown_hours: float | None = None
    min_confidence_margin: float | None = None
    min_consecutive_cycles: int | None = None


class PolicyRule(BaseModel):
    rule_id: str = Field(default_factory=lambda: new_id("rule"))
    name: str
    category: PolicyCategory
    enabled: bool = True
    description: str = ""
    params: dict[str, Any] = Field(default_factory=dict)


class TargetConfig(BaseModel):
    target: str
    autonomy_level: Literal["advisory", "pr_only", "auto_merge", "auto_release"] = "pr_only"
    change_budget_per_window: int = 5
    window_hours: int = 24
    allowed_categories: list[ProposalCategory] = Field(default_factory=list)
    max_loc_per_pr: int = 500
    scorecard_weights: dict[str, float] = Field(default_factory=dict)
    created_at: str = Field(default_factory=now_iso)


class GovernanceApproval(BaseModel):
    approval_id: str = Field(default_factory=lambda: new_id("appr"))
    target_type: GovernanceTargetType
    target_id: str
    approved_by: str
    risk_acknowledged: bool
    rollback_plan_acknowledged: bool
    notes: str = ""
    created_at: str = Field(default_factory=now_iso)


# ---------------------------------------------------------------------------
# Scorecards and feedback
# ---------------------------------------------------------------------------

class SubMetric(BaseModel):
    name: str
    value: float
    threshold: float
    passed: bool


class ScorecardDimension(BaseModel):
    name: str
    weight: float
    primary: bool = False
    score: float = 0.0
    metrics: list[SubMetric] = Field(default_factory=list)


class ScorecardSnapshot(BaseModel):
    snapshot_id: str = Field(default_factory=lambda: new_id("score"))
    target: str
    dimensions: list[ScorecardDimension] = Field(default_factory=list)
    overall: float = 0.0
    notes: str = ""
    created_at: str = Field(default_factory=now_iso)

    def scores(self) -> dict[str, float]:
        """Dimension name → score, plus `overall`."""
        out = {d.name: d.score for d in self.dimensions}
        out["overall"] = self.overall
        return out

    @property
    def primary_dimensions(self) -> list[str]:
        return [d.name for d in self.dimensions if d.primary]


class FeedbackEntry(BaseModel):
    feedback_id: str = Field(default_factory=lambda: new_id("fb"))
    target: str
    pipeline_id: str
    command: str
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    lessons: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)
