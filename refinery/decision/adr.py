"""
REFINERY ADR Manager

ADRs are binding tie-breakers. Once accepted they hold until the
anti-oscillation engine allows a flip and someone records a
replacement. Replacing never deletes: the old record is marked
superseded and points at its successor by id.
"""

from __future__ import annotations

from datetime import timedelta

from loguru import logger

from refinery.audit_logger import AuditLog
from refinery.config_loader import RefineryConfig
from refinery.models import ADR, ADRInput, ImprovementProposal, utc_now
from refinery.storage import Database, RecordNotFoundError, StaleRecordError


def adr_search_text(adr: ADR) -> str:
    return f"{adr.title} {adr.decision} {adr.rationale}".strip()


class ADRManager:
    def __init__(self, config: RefineryConfig, db: Database, audit: AuditLog):
        self.config = config
        self.db = db
        self.audit = audit

    def _build(self, data: ADRInput, supersedes: str | None = None) -> ADR:
        defaults = self.config.defaults
        cooldown_hours = data.cooldown_hours if data.cooldown_hours is not None else defaults.cooldown_hours
        return ADR(
            target=data.target,
            title=data.title,
            context=data.context,
            decision=data.decision,
            rationale=data.rationale,
            consequences=data.consequences,
            alternatives_considered=data.alternatives_considered,
            confidence=data.confidence,
            cooldown_until=(utc_now() + timedelta(hours=cooldown_hours)).isoformat(),
            min_confidence_margin=(
                data.min_confidence_margin if data.min_confidence_margin is not None
                else defaults.min_confidence_margin
            ),
            min_consecutive_cycles=(
                data.min_consecutive_cycles if data.min_consecutive_cycles is not None
                else defaults.min_consecutive_cycles
            ),
            supersedes=supersedes,
            related_proposals=data.related_proposals,
        )

    def _store(self, adr: ADR) -> ADR:
        self.db.insert_adr(adr)
        self.db.vectors.index(adr.adr_id, "decisions", adr_search_text(adr), {
            "adr_id": adr.adr_id, "target": adr.target, "confidence": adr.confidence,
        })
        self.audit.record("adr.record", "decision_plane", "adr", adr.adr_id, {
            "title": adr.title,
            "confidence": adr.confidence,
            "cooldown_until": adr.cooldown_until,
        })
        logger.info(f"[ADR] Recorded {adr.adr_id}: {adr.title} (confidence {adr.confidence:.2f})")
        return adr

    def record(self, data: ADRInput) -> ADR:
        return self._store(self._build(data))

    def supersede(self, old_id: str, data: ADRInput) -> tuple[ADR, ADR]:
        """Replace *old_id* with a new ADR. Returns (old, new)."""
        old = self.db.get_adr(old_id)
        if old is None:
            raise RecordNotFoundError("decisions", old_id, "List active decisions to find a valid ADR id.")
        if old.status != "accepted":
            raise StaleRecordError(f"ADR {old_id} is already {old.status} (by {old.superseded_by})")

        merged = data.model_copy(update={
            "related_proposals": list(dict.fromkeys(data.related_proposals + old.related_proposals)),
        })
        new = self._build(merged, supersedes=old_id)

        # Claim the old record first so two racing supersedes cannot both win.
        old = self.db.supersede_adr(old_id, new.adr_id)
        self._store(new)

        self.audit.record("adr.supersede", "decision_plane", "adr", old_id, {"superseded_by": new.adr_id})
        logger.info(f"[ADR] {old_id} superseded by {new.adr_id}")
        return old, new

    def active(self, target: str | None = None) -> list[ADR]:
        return self.db.active_adrs(target)

    def related(self, proposal: ImprovementProposal) -> list[ADR]:
        threshold = self.config.oscillation.related_adr_threshold
        found: list[ADR] = []
        for hit in self.db.vectors.search("decisions", f"{proposal.title} {proposal.description}", top_k=5):
            if hit.score <= threshold:
                continue
            adr = self.db.get_adr(hit.item_id)
            if adr and adr.status == "accepted" and adr not in found:
                found.append(adr)
        return found


def format_markdown(adr: ADR) -> str:
    lines = [
        f"# ADR: {adr.title}",
        "",
        f"**Status**: {adr.status} | **Confidence**: {adr.confidence * 100:.0f}% "
        f"| **Cooldown Until**: {adr.cooldown_until}",
        "",
        "## Context", adr.context or "None.", "",
        "## Decision", adr.decision, "",
        "## Rationale", adr.rationale or "None.", "",
        "## Consequences",
        *[f"- {c}" for c in adr.consequences],
        "",
        "## Alternatives",
        *[f"- {a}" for a in adr.alternatives_considered],
    ]
    if adr.superseded_by:
        lines += ["", f"**Superseded by**: {adr.superseded_by}"]
    return "\n".join(lines)
