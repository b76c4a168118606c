"""
REFINERY Consensus — cross-perspective agreement.

Findings from different perspectives that say the same thing are
merged into one ConsensusFinding whose agreement score is the share
of consulted perspectives that support it.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from refinery.audit_logger import AuditLog
from refinery.config_loader import RefineryConfig
from refinery.models import (
    IMPACT_FIELDS,
    ConsensusFinding,
    ConsensusResult,
    Evidence,
    ExpectedImpact,
    Finding,
    ResearchFeedEntry,
    max_risk,
)
from refinery.similarity import combined_similarity
from refinery.storage import Database


@dataclass
class _Entry:
    perspective: str
    finding: Finding
    confidence: float

    @property
    def text(self) -> str:
        return f"{self.finding.claim} {self.finding.recommendation}"

    def sort_key(self) -> tuple:
        impact = self.finding.expected_impact
        return (
            self.perspective,
            self.finding.claim,
            self.finding.recommendation,
            tuple(getattr(impact, f) for f in IMPACT_FIELDS),
            self.finding.risk.level,
            -self.confidence,
        )


def _cluster(entries: list[_Entry], threshold: float) -> list[list[_Entry]]:
    clusters: list[list[_Entry]] = []
    used: set[int] = set()
    for i, seed in enumerate(entries):
        if i in used:
            continue
        cluster = [seed]
        used.add(i)
        for j in range(i + 1, len(entries)):
            if j in used or entries[j].perspective == seed.perspective:
                continue
            if combined_similarity(seed.text, entries[j].text) >= threshold:
                cluster.append(entries[j])
                used.add(j)
        clusters.append(cluster)
    return clusters


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _merge(cluster: list[_Entry], consulted: int) -> ConsensusFinding:
    perspectives = sorted({e.perspective for e in cluster})
    # max() keeps the first of equals, so ties fall back to canonical order.
    best = max(cluster, key=lambda e: e.confidence)

    evidence: dict[str, Evidence] = {}
    for entry in cluster:
        for item in entry.finding.evidence:
            evidence.setdefault(f"{item.type}:{item.value}", item)

    agreement = len(perspectives) / consulted if consulted else 0.0
    return ConsensusFinding(
        claim=best.finding.claim,
        recommendation=best.finding.recommendation,
        supporting_perspectives=perspectives,
        agreement_score=max(0.0, min(1.0, agreement)),
        combined_confidence=_mean([e.confidence for e in cluster]),
        merged_impact=ExpectedImpact(**{
            f: _mean([getattr(e.finding.expected_impact, f) for e in cluster]) for f in IMPACT_FIELDS
        }),
        merged_evidence=list(evidence.values()),
        risk_level=max_risk([e.finding.risk.level for e in cluster]),
    )


def compute_consensus(feeds: list[ResearchFeedEntry], target: str, threshold: float = 0.3) -> ConsensusResult:
    """Pure consensus over *feeds*. Output does not depend on feed or finding order."""
    entries = [
        _Entry(feed.perspective, finding, feed.confidence)
        for feed in feeds
        for finding in feed.findings
    ]
    entries.sort(key=_Entry.sort_key)

    perspectives = sorted({feed.perspective for feed in feeds})
    findings = [_merge(c, len(perspectives)) for c in _cluster(entries, threshold)]

    return ConsensusResult(
        target=target,
        findings=findings,
        perspectives_consulted=perspectives,
        overall_agreement=_mean([f.agreement_score for f in findings]),
        feed_ids=sorted(feed.feed_id for feed in feeds),
    )


class ConsensusEngine:
    def __init__(self, config: RefineryConfig, db: Database, audit: AuditLog):
        self.config = config
        self.db = db
        self.audit = audit

    def compute(self, target: str, feed_ids: list[str] | None = None, pipeline_id: str | None = None) -> ConsensusResult:
        feeds = self.db.research_feeds(target, feed_ids)
        result = compute_consensus(feeds, target, self.config.consensus.similarity_threshold)
        self.db.insert_consensus(result)

        self.audit.record("consensus.compute", "system", "consensus", result.consensus_id, {
            "target": target,
            "feeds": len(feeds),
            "findings": len(result.findings),
            "overall_agreement": round(result.overall_agreement, 4),
        }, correlation_id=pipeline_id)
        logger.info(
            f"[CONSENSUS] {target}: {len(result.findings)} finding(s) from "
            f"{len(result.perspectives_consulted)} perspective(s), "
            f"agreement {result.overall_agreement:.2f}"
        )
        return result
