"""
REFINERY Triage — from consensus findings to a ranked, gated backlog.

  1. Escalate low-agreement, low-confidence findings to a human.
  2. Bucket the rest by inferred category.
  3. Sub-cluster large buckets by keyword similarity; one proposal
     per cluster, represented by its strongest member.
  4. Score, then run every proposal through policy and
     anti-oscillation.
"""

from __future__ import annotations

from loguru import logger

from refinery.audit_logger import AuditLog
from refinery.config_loader import RefineryConfig
from refinery.decision.oscillation import OscillationEngine, is_no_op
from refinery.decision.policy import PolicyEngine
from refinery.event_bus import EventBus
from refinery.models import (
    IMPACT_FIELDS,
    ConsensusFinding,
    ConsensusResult,
    Escalation,
    ImprovementProposal,
    TriagedProposal,
    TriageResult,
    max_risk,
)
from refinery.similarity import keyword_jaccard
from refinery.storage import Database

CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("security", ("security", "auth", "vulnerability")),
    ("dependency", ("dependency", "package", "supply chain")),
    ("refactor", ("refactor", "restructure", "clean up")),
    ("docs", ("documentation", "readme", "comment")),
    ("prompt_only", ("prompt", "template", "instruction")),
]

RISK_PENALTY = {"low": 0.0, "medium": -0.05, "high": -0.1, "critical": -0.15}
RISK_DISCOUNT = {"low": 1.0, "medium": 0.8, "high": 0.6, "critical": 0.4}
LOC_PER_IMPACT = {"low": 50, "medium": 100, "high": 150, "critical": 200}

NO_OP_REASON = "Blocked: no measurable impact on scorecards"


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------

def infer_category(finding: ConsensusFinding) -> str:
    text = f"{finding.claim} {finding.recommendation}".lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in text for k in keywords):
            return category
    return "behavioral"


def member_score(finding: ConsensusFinding) -> float:
    return finding.combined_confidence * (1 + finding.agreement_score)


def acceptance_criteria(finding: ConsensusFinding) -> list[str]:
    impact = finding.merged_impact
    criteria = [f'Implementation addresses: "{finding.claim}"']
    if impact.security > 0.3:
        criteria.append("Security scan passes with no new vulnerabilities")
    if impact.reliability > 0.3:
        criteria.append("All existing tests continue to pass")
        criteria.append("New tests added for the changed behavior")
    if impact.performance > 0.3:
        criteria.append("Performance benchmarks show no regression")
    criteria.append("Scorecard overall score does not decrease")
    return criteria


def estimate_loc(finding: ConsensusFinding, risk_level: str | None = None) -> int:
    return round(finding.merged_impact.magnitude() * LOC_PER_IMPACT[risk_level or finding.risk_level])


def priority_score(finding: ConsensusFinding, weights: dict[str, float], risk_level: str | None = None) -> float:
    impact = finding.merged_impact
    weighted = sum(getattr(impact, f) * weights.get(f, 0.0) for f in IMPACT_FIELDS)
    score = (
        weighted
        + finding.agreement_score * 0.2
        + finding.combined_confidence * 0.15
        + RISK_PENALTY[risk_level or finding.risk_level]
    )
    return max(0.0, min(1.0, score))


def risk_adjusted_impact(finding: ConsensusFinding, risk_level: str | None = None) -> float:
    level = risk_level or finding.risk_level
    return finding.merged_impact.magnitude() * RISK_DISCOUNT[level] * finding.combined_confidence


def cluster_bucket(members: list[ConsensusFinding], threshold: float) -> list[list[ConsensusFinding]]:
    """Buckets of two or fewer stay one-per-finding; larger ones are leader-clustered."""
    if len(members) <= 2:
        return [[m] for m in members]

    ordered = sorted(members, key=lambda f: (-member_score(f), f.claim))
    clusters: list[list[ConsensusFinding]] = []
    used: set[int] = set()
    for i, seed in enumerate(ordered):
        if i in used:
            continue
        cluster = [seed]
        used.add(i)
        seed_text = f"{seed.claim} {seed.recommendation}"
        for j in range(i + 1, len(ordered)):
            if j in used:
                continue
            other = ordered[j]
            if keyword_jaccard(seed_text, f"{other.claim} {other.recommendation}") >= threshold:
                cluster.append(other)
                used.add(j)
        clusters.append(cluster)
    return clusters


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TriageEngine:
    def __init__(
        self,
        config: RefineryConfig,
        db: Database,
        audit: AuditLog,
        policy: PolicyEngine,
        oscillation: OscillationEngine,
        bus: EventBus | None = None,
    ):
        self.config = config
        self.db = db
        self.audit = audit
        self.policy = policy
        self.oscillation = oscillation
        self.bus = bus

    def _is_escalation(self, finding: ConsensusFinding) -> bool:
        cfg = self.config.triage
        return (
            finding.agreement_score < cfg.escalation_agreement
            and finding.combined_confidence < cfg.escalation_confidence
        )

    def _build_proposal(
        self, cluster: list[ConsensusFinding], category: str, target: str, pipeline_id: str | None
    ) -> tuple[ImprovementProposal, ConsensusFinding, str]:
        rep = max(cluster, key=member_score)
        risk = max_risk([m.risk_level for m in cluster])
        proposal = ImprovementProposal(
            target=target,
            title=rep.claim[:200],
            claim=rep.claim,
            recommendation=rep.recommendation,
            category=category,
            status="triaged",
            risk_level=risk,
            expected_impact=rep.merged_impact,
            acceptance_criteria=acceptance_criteria(rep),
            estimated_loc=estimate_loc(rep, risk),
            agreement_score=rep.agreement_score,
            confidence=rep.combined_confidence,
            supporting_perspectives=rep.supporting_perspectives,
            consensus_finding_refs=[m.claim for m in cluster],
            pipeline_id=pipeline_id,
        )
        return proposal, rep, risk

    def triage(self, consensus: ConsensusResult, pipeline_id: str | None = None) -> TriageResult:
        target_cfg = self.db.get_target(consensus.target)
        weights = (target_cfg.scorecard_weights if target_cfg and target_cfg.scorecard_weights
                   else self.config.triage.scorecard_weights)
        budget = (target_cfg.change_budget_per_window if target_cfg
                  else self.config.defaults.change_budget_per_window)

        escalations: list[Escalation] = []
        buckets: dict[str, list[ConsensusFinding]] = {}
        for finding in consensus.findings:
            if self._is_escalation(finding):
                escalations.append(Escalation(
                    claim=finding.claim,
                    agreement_score=finding.agreement_score,
                    combined_confidence=finding.combined_confidence,
                    message=(
                        f'Low-agreement finding needs human review: "{finding.claim}" '
                        f"(agreement: {finding.agreement_score:.2f}, "
                        f"confidence: {finding.combined_confidence:.2f})"
                    ),
                ))
                continue
            buckets.setdefault(infer_category(finding), []).append(finding)

        triaged: list[TriagedProposal] = []
        for category in sorted(buckets):
            for cluster in cluster_bucket(buckets[category], self.config.triage.cluster_threshold):
                triaged.append(self._evaluate(cluster, category, consensus.target, weights, pipeline_id))

        triaged.sort(key=lambda t: (-t.priority_score, t.proposal.title))
        actionable = sum(1 for t in triaged if t.actionable)

        for item in triaged:
            self.db.insert_proposal(item.proposal)
            self.audit.record("proposal.triage", "triage_engine", "proposal", item.proposal.proposal_id, {
                "priority_score": round(item.priority_score, 4),
                "risk_adjusted_impact": round(item.risk_adjusted_impact, 4),
                "actionable": item.actionable,
                "requires_approval": item.policy.requires_approval,
                "reason": item.reason,
            }, correlation_id=pipeline_id)
            if self.bus:
                self.bus.emit("proposal.triaged", "triage_engine", {
                    "proposal_id": item.proposal.proposal_id,
                    "priority": item.proposal.priority,
                    "actionable": item.actionable,
                })

        logger.info(
            f"[TRIAGE] {consensus.target}: {len(triaged)} proposal(s), "
            f"{actionable} actionable, {len(escalations)} escalation(s)"
        )
        return TriageResult(
            target=consensus.target,
            consensus_id=consensus.consensus_id,
            proposals=triaged,
            escalations=escalations,
            budget_remaining=max(0, budget - actionable),
        )

    def _evaluate(
        self,
        cluster: list[ConsensusFinding],
        category: str,
        target: str,
        weights: dict[str, float],
        pipeline_id: str | None,
    ) -> TriagedProposal:
        proposal, rep, risk = self._build_proposal(cluster, category, target, pipeline_id)
        score = priority_score(rep, weights, risk)
        proposal.priority = round(score * 100)

        policy = self.policy.evaluate(proposal)
        oscillation = self.oscillation.check(proposal, rep.combined_confidence)
        no_op = is_no_op(proposal)

        if no_op:
            reason = NO_OP_REASON
        elif not oscillation.allowed:
            reason = "Blocked by anti-oscillation engine"
        elif not policy.allowed:
            reason = "Blocked by policy violation"
        else:
            reason = (
                f"Supported by {len(rep.supporting_perspectives)} perspective(s) "
                f"({', '.join(rep.supporting_perspectives)}) with {rep.agreement_score * 100:.0f}% agreement"
            )

        return TriagedProposal(
            proposal=proposal,
            priority_score=score,
            risk_adjusted_impact=risk_adjusted_impact(rep, risk),
            policy=policy,
            oscillation=oscillation,
            is_no_op=no_op,
            actionable=not no_op and oscillation.allowed and policy.allowed,
            reason=reason,
        )
