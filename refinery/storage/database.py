"""
REFINERY Database — the named collections and their typed accessors.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from refinery.models import (
    ADR,
    ConsensusResult,
    FeedbackEntry,
    GovernanceApproval,
    ImprovementProposal,
    PolicyRule,
    ResearchFeedEntry,
    ScorecardSnapshot,
    TargetConfig,
    now_iso,
)
from refinery.storage.json_store import JsonStore, RecordNotFoundError
from refinery.storage.vector import VectorIndex

COLLECTIONS: dict[str, str] = {
    "targets": "target",
    "research_feeds": "feed_id",
    "consensus": "consensus_id",
    "proposals": "proposal_id",
    "decisions": "adr_id",
    "policies": "rule_id",
    "scorecards": "snapshot_id",
    "approvals": "approval_id",
    "pipelines": "pipeline_id",
    "deliberations": "session_id",
    "feedback": "feedback_id",
    "vectors": "vector_id",
}


class Database:
    def __init__(self, base_path: Path | str, bus=None, audit=None):
        self.base_path = Path(base_path)
        self.bus = bus
        self.audit = audit
        self.collections = {
            name: JsonStore(self.base_path, name, key_field)
            for name, key_field in COLLECTIONS.items()
        }
        self.vectors = VectorIndex(self["vectors"])
        logger.debug(f"[STORE] Opened database at {self.base_path}")

    def __getitem__(self, collection: str) -> JsonStore:
        return self.collections[collection]

    # -- targets ------------------------------------------------------------

    def upsert_target(self, config: TargetConfig) -> TargetConfig:
        self["targets"].upsert(config.model_dump())
        return config

    def get_target(self, target: str) -> TargetConfig | None:
        record = self["targets"].get(target)
        return TargetConfig(**record) if record else None

    def list_targets(self) -> list[TargetConfig]:
        return [TargetConfig(**r) for r in self["targets"].list()]

    # -- research -----------------------------------------------------------

    def insert_feed(self, entry: ResearchFeedEntry) -> ResearchFeedEntry:
        self["research_feeds"].insert(entry.model_dump())
        return entry

    def research_feeds(self, target: str, feed_ids: list[str] | None = None) -> list[ResearchFeedEntry]:
        wanted = set(feed_ids) if feed_ids is not None else None
        records = self["research_feeds"].list(
            lambda r: r["target"] == target and (wanted is None or r["feed_id"] in wanted)
        )
        feeds = [ResearchFeedEntry(**r) for r in records]
        return sorted(feeds, key=lambda f: (f.created_at, f.feed_id))

    def insert_consensus(self, result: ConsensusResult) -> ConsensusResult:
        self["consensus"].insert(result.model_dump())
        return result

    def get_consensus(self, consensus_id: str) -> ConsensusResult | None:
        record = self["consensus"].get(consensus_id)
        return ConsensusResult(**record) if record else None

    def latest_consensus(self, target: str) -> ConsensusResult | None:
        records = self["consensus"].list(lambda r: r["target"] == target)
        if not records:
            return None
        return ConsensusResult(**max(records, key=lambda r: (r["created_at"], r["consensus_id"])))

    # -- proposals ----------------------------------------------------------

    def insert_proposal(self, proposal: ImprovementProposal) -> ImprovementProposal:
        self["proposals"].insert(proposal.model_dump())
        return proposal

    def get_proposal(self, proposal_id: str) -> ImprovementProposal | None:
        record = self["proposals"].get(proposal_id)
        return ImprovementProposal(**record) if record else None

    def list_proposals(self, target: str | None = None, status: str | list[str] | None = None) -> list[ImprovementProposal]:
        statuses = {status} if isinstance(status, str) else set(status or [])

        def match(r: dict) -> bool:
            if target and r["target"] != target:
                return False
            return not statuses or r["status"] in statuses

        return [ImprovementProposal(**r) for r in self["proposals"].list(match)]

    def update_proposal_status(self, proposal_id: str, status: str, actor: str = "system") -> ImprovementProposal:
        current = self.get_proposal(proposal_id)
        if current is None:
            raise RecordNotFoundError("proposals", proposal_id, "Run triage to create proposals, then use their ids.")
        record = self["proposals"].update(proposal_id, {"status": status, "updated_at": now_iso()})
        proposal = ImprovementProposal(**record)
        if self.audit:
            self.audit.record(
                "proposal.status", actor, "proposal", proposal_id,
                {"from": current.status, "to": status},
            )
        if self.bus:
            self.bus.emit("proposal.status", actor, {
                "proposal_id": proposal_id, "from": current.status, "to": status,
            })
        return proposal

    # -- decisions ----------------------------------------------------------

    def insert_adr(self, adr: ADR) -> ADR:
        self["decisions"].insert(adr.model_dump())
        return adr

    def get_adr(self, adr_id: str) -> ADR | None:
        record = self["decisions"].get(adr_id)
        return ADR(**record) if record else None

    def list_adrs(self, target: str | None = None) -> list[ADR]:
        return [ADR(**r) for r in self["decisions"].list(lambda r: not target or r["target"] == target)]

    def active_adrs(self, target: str | None = None) -> list[ADR]:
        return [a for a in self.list_adrs(target) if a.status == "accepted"]

    def supersede_adr(self, old_id: str, new_id: str) -> ADR:
        """Test-and-set accepted → superseded. Raises StaleRecordError if already superseded."""
        record = self["decisions"].compare_and_set(
            old_id, "status", "accepted",
            {"status": "superseded", "superseded_by": new_id, "updated_at": now_iso()},
        )
        return ADR(**record)

    # -- policy / governance ------------------------------------------------

    def insert_policy(self, rule: PolicyRule) -> PolicyRule:
        self["policies"].insert(rule.model_dump())
        return rule

    def policy_rules(self, enabled: bool | None = None) -> list[PolicyRule]:
        rules = [PolicyRule(**r) for r in self["policies"].list()]
        if enabled is None:
            return rules
        return [r for r in rules if r.enabled == enabled]

    def insert_approval(self, approval: GovernanceApproval) -> GovernanceApproval:
        self["approvals"].insert(approval.model_dump())
        return approval

    def has_approval(self, target_type: str, target_id: str) -> bool:
        return self["approvals"].count(
            lambda r: r["target_type"] == target_type and r["target_id"] == target_id
        ) > 0

    # -- scorecards / feedback ----------------------------------------------

    def insert_scorecard(self, snapshot: ScorecardSnapshot) -> ScorecardSnapshot:
        self["scorecards"].insert(snapshot.model_dump())
        return snapshot

    def latest_scorecard(self, target: str) -> ScorecardSnapshot | None:
        records = self["scorecards"].list(lambda r: r["target"] == target)
        if not records:
            return None
        return ScorecardSnapshot(**max(records, key=lambda r: (r["created_at"], r["snapshot_id"])))

    def insert_feedback(self, entry: FeedbackEntry) -> FeedbackEntry:
        self["feedback"].insert(entry.model_dump())
        return entry

    def feedback(self, target: str, limit: int = 5) -> list[FeedbackEntry]:
        records = self["feedback"].list(lambda r: r["target"] == target)
        records.sort(key=lambda r: r["created_at"], reverse=True)
        return [FeedbackEntry(**r) for r in records[:limit]]
