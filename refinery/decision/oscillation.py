"""
REFINERY Anti-Oscillation Engine — hysteretic decision enforcement.

Stops the system from ping-ponging on its own decisions:
  - a proposal that contradicts an accepted ADR inside its cooldown
    window needs a confidence lead of at least the ADR's margin
  - a proposal whose scorecard target would lower a primary
    dimension of the current baseline is blocked
  - proposals with no measurable effect are flagged as no-ops

The verdict is a pure function of (proposal, ADR, confidence, now,
baseline), so asking twice gives the same answer.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger

from refinery.audit_logger import AuditLog
from refinery.config_loader import RefineryConfig
from refinery.decision.adr import adr_search_text
from refinery.models import (
    ADR,
    ImprovementProposal,
    OscillationCheck,
    ScorecardSnapshot,
    parse_ts,
    utc_now,
)
from refinery.storage import Database

NO_OP_LOC = 5
NO_OP_SCORE_DELTA = 0.001


@dataclass
class FlipDecision:
    should_flip: bool
    reason: str
    cooldown_remaining_hours: float
    confidence_gap: float
    consecutive_confirmations: int = 0


def should_flip(adr: ADR, new_confidence: float, now: datetime, confirmations: int = 0) -> FlipDecision:
    remaining = max(0.0, (parse_ts(adr.cooldown_until) - now).total_seconds() / 3600)
    # Rounded so 0.95 - 0.7 counts as a 0.25 lead.
    gap = round(new_confidence - adr.confidence, 6)

    if remaining <= 0:
        return FlipDecision(True, "Cooldown expired", 0.0, gap, confirmations)

    if gap >= adr.min_confidence_margin:
        return FlipDecision(
            True,
            f"Confidence gap {gap:.3f} meets required margin {adr.min_confidence_margin}",
            remaining, gap, confirmations,
        )

    return FlipDecision(
        False,
        (
            f"Cooldown active: {math.ceil(remaining)}h remaining; "
            f"confidence gap {gap:.3f} below required margin {adr.min_confidence_margin}"
        ),
        remaining, gap, confirmations,
    )


def degrading_dimensions(baseline: ScorecardSnapshot | None, target_scores: dict[str, float] | None) -> list[str]:
    """Primary baseline dimensions that *target_scores* would lower."""
    if baseline is None or not target_scores:
        return []
    return [
        d.name for d in baseline.dimensions
        if d.primary and d.name in target_scores and target_scores[d.name] < d.score
    ]


def is_no_op(proposal: ImprovementProposal) -> bool:
    if proposal.expected_impact.magnitude() == 0:
        return True
    if proposal.category == "prompt_only" and proposal.estimated_loc < NO_OP_LOC:
        return True
    baseline, target = proposal.scorecard_baseline, proposal.scorecard_target
    if baseline and target and "overall" in baseline and "overall" in target:
        return abs(target["overall"] - baseline["overall"]) < NO_OP_SCORE_DELTA
    return False


class OscillationEngine:
    def __init__(self, config: RefineryConfig, db: Database, audit: AuditLog):
        self.config = config
        self.db = db
        self.audit = audit

    def find_conflicting_adr(self, proposal: ImprovementProposal) -> ADR | None:
        for adr_id in proposal.adr_refs:
            adr = self.db.get_adr(adr_id)
            if adr and adr.status == "accepted":
                return adr

        threshold = self.config.oscillation.adr_match_threshold
        for hit in self.db.vectors.search("decisions", f"{proposal.title} {proposal.description}", top_k=5):
            if hit.score <= threshold:
                break
            adr = self.db.get_adr(hit.item_id)
            if adr and adr.status == "accepted" and adr.target == proposal.target:
                return adr
        return None

    def consecutive_confirmations(self, adr: ADR) -> int:
        threshold = self.config.oscillation.confirmation_threshold
        count = 0
        for hit in self.db.vectors.search("decisions", adr_search_text(adr), top_k=10):
            if hit.score <= threshold:
                break
            count += 1
        return count

    def check(self, proposal: ImprovementProposal, confidence: float, now: datetime | None = None) -> OscillationCheck:
        now = now or utc_now()
        adr = self.find_conflicting_adr(proposal)
        degrading = degrading_dimensions(self.db.latest_scorecard(proposal.target), proposal.scorecard_target)

        if adr is None and not degrading:
            return OscillationCheck(allowed=True, reason="No conflicting ADR found")

        reasons = []
        result = OscillationCheck(degrading_dimensions=degrading)
        if adr is not None:
            flip = should_flip(adr, confidence, now, self.consecutive_confirmations(adr))
            result.blocking_adr = adr.adr_id
            result.cooldown_remaining_hours = round(flip.cooldown_remaining_hours, 3)
            result.confidence_gap = flip.confidence_gap
            result.required_margin = adr.min_confidence_margin
            result.consecutive_confirmations = flip.consecutive_confirmations
            if not flip.should_flip:
                reasons.append(flip.reason)
        if degrading:
            reasons.append(f"Change would degrade primary scorecard metrics: {', '.join(degrading)}")

        result.allowed = not reasons
        if result.allowed:
            result.reason = f'Supersedes ADR "{adr.title}" ({adr.adr_id}): hysteresis conditions met'
            return result

        result.reason = "; ".join(reasons)
        self.audit.record("oscillation.blocked", "anti_oscillation_engine", "proposal", proposal.proposal_id, {
            "conflicting_adr": result.blocking_adr,
            "reason": result.reason,
            "confidence_gap": result.confidence_gap,
            "cooldown_remaining_hours": result.cooldown_remaining_hours,
        }, correlation_id=proposal.pipeline_id)
        logger.info(f"[OSCILLATION] {proposal.proposal_id} blocked: {result.reason}")
        return result

    def detect_reversion(self, proposal: ImprovementProposal) -> dict:
        threshold = self.config.oscillation.reversion_threshold
        hits = [
            h for h in self.db.vectors.search("decisions", f"{proposal.title} {proposal.description}", top_k=3)
            if h.score > threshold
        ]
        return {
            "is_reversion": bool(hits),
            "similar_decisions": [h.item_id for h in hits],
            "similarity_score": hits[0].score if hits else 0.0,
        }

    def stability_score(self, target: str, now: datetime | None = None) -> dict:
        now = now or utc_now()
        window = timedelta(hours=self.config.defaults.window_hours)
        adrs = self.db.list_adrs(target)
        flips = [a for a in adrs if a.superseded_by and now - parse_ts(a.updated_at) < window]
        score = 1 - len(flips) / len(adrs) if adrs else 1.0
        return {
            "stability_score": max(0.0, score),
            "flips_in_window": len(flips),
            "total_decisions": len(adrs),
        }
