"""
REFINERY Task Classifier

Heuristics over task metadata that decide which model tier fits a
task and whether it deserves multi-model deliberation.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from refinery.config_loader import RoutingConfig
from refinery.models import RiskLevel, new_id

Complexity = Literal["trivial", "simple", "moderate", "complex", "critical"]
Tier = Literal["architect", "workhorse", "fast"]

RISK_POINTS = {"low": 0, "medium": 1, "high": 3, "critical": 5}
KEYWORD_POINTS = (
    ("breaking change", 4),
    ("migration", 3),
    ("security vulnerability", 4),
    ("architecture", 3),
    ("performance critical", 2),
)
DOMAIN_KEYWORDS = (
    ("security", ("security", "auth", "vulnerability")),
    ("architecture", ("architecture", "design", "structure")),
    ("performance", ("performance", "latency", "throughput")),
    ("review", ("review", "audit", "assess")),
    ("documentation", ("doc", "readme", "comment")),
)


class ClassifyInput(BaseModel):
    description: str
    domain: str | None = None
    risk_level: RiskLevel | None = None
    estimated_loc: int = 0
    touches_security: bool = False
    touches_auth: bool = False
    is_architectural: bool = False
    has_conflicting_adrs: bool = False
    user_requested_multi: bool = False
    proposal_count: int = 0


class TaskClassification(BaseModel):
    task_id: str = Field(default_factory=lambda: new_id("task"))
    description: str
    complexity: Complexity
    complexity_score: int
    domain: str
    risk_level: RiskLevel
    requires_multi_model: bool
    recommended_tier: Tier
    recommended_models: list[str] = Field(default_factory=list)
    reasoning: str = ""


def complexity_score(data: ClassifyInput) -> int:
    score = 0
    score += 3 if data.touches_security else 0
    score += 3 if data.touches_auth else 0
    score += 4 if data.is_architectural else 0
    score += 3 if data.has_conflicting_adrs else 0
    score += 2 if data.user_requested_multi else 0

    if data.estimated_loc > 500:
        score += 3
    elif data.estimated_loc > 200:
        score += 2
    elif data.estimated_loc > 50:
        score += 1

    if data.proposal_count > 5:
        score += 2
    elif data.proposal_count > 2:
        score += 1

    score += RISK_POINTS.get(data.risk_level or "low", 0)

    text = data.description.lower()
    score += sum(points for phrase, points in KEYWORD_POINTS if phrase in text)
    return score


def complexity_level(score: int) -> Complexity:
    if score >= 12:
        return "critical"
    if score >= 8:
        return "complex"
    if score >= 4:
        return "moderate"
    if score >= 2:
        return "simple"
    return "trivial"


def infer_risk(data: ClassifyInput) -> RiskLevel:
    if data.touches_security or data.touches_auth or data.is_architectural:
        return "high"
    if data.has_conflicting_adrs or data.estimated_loc > 300:
        return "medium"
    return "low"


def infer_domain(description: str) -> str:
    text = description.lower()
    for domain, keywords in DOMAIN_KEYWORDS:
        if any(k in text for k in keywords):
            return domain
    return "code"


def pick_tier(complexity: Complexity, risk: str) -> Tier:
    if complexity in ("critical", "complex") or risk in ("critical", "high"):
        return "architect"
    if complexity == "trivial" and risk == "low":
        return "fast"
    return "workhorse"


def needs_multi_model(complexity: Complexity, risk: str, data: ClassifyInput, threshold: str) -> bool:
    if data.user_requested_multi:
        return True
    if threshold == "critical":
        return complexity == "critical" or risk == "critical"
    return complexity in ("critical", "complex") or risk in ("critical", "high")


def classify_task(data: ClassifyInput, routing: RoutingConfig) -> TaskClassification:
    score = complexity_score(data)
    complexity = complexity_level(score)
    risk = data.risk_level or infer_risk(data)
    tier = pick_tier(complexity, risk)
    multi = needs_multi_model(complexity, risk, data, routing.multi_model_threshold)

    if multi and len(routing.architect_pair) >= 2:
        models = list(routing.architect_pair[:2])
    elif multi:
        models = [routing.architect]
    else:
        models = [getattr(routing, tier)]

    reasons = [f"Task classified as {complexity} complexity, {risk} risk.", f"Recommended tier: {tier}."]
    if data.touches_security:
        reasons.append("Security-sensitive: elevated to architect tier.")
    if data.is_architectural:
        reasons.append("Architectural change: requires deep reasoning.")
    if data.has_conflicting_adrs:
        reasons.append("Conflicting ADRs exist: careful deliberation needed.")
    if multi:
        reasons.append("Multi-model deliberation engaged.")

    return TaskClassification(
        description=data.description,
        complexity=complexity,
        complexity_score=score,
        domain=data.domain or infer_domain(data.description),
        risk_level=risk,
        requires_multi_model=multi,
        recommended_tier=tier,
        recommended_models=models,
        reasoning=" ".join(reasons),
    )
