import pytest

from refinery.decision import OscillationEngine, PolicyEngine, TriageEngine
from refinery.decision.triage import NO_OP_REASON, cluster_bucket, estimate_loc, infer_category, priority_score
from refinery.event_bus import EventBus
from refinery.models import ConsensusFinding, ConsensusResult, ExpectedImpact

WEIGHTS = {"security": 0.3, "reliability": 0.25, "devex": 0.2, "performance": 0.15}


def _cf(claim, recommendation="Fix it properly", agreement=0.8, confidence=0.7, risk="low", **impact):
    return ConsensusFinding(
        claim=claim,
        recommendation=recommendation,
        supporting_perspectives=["reliability", "security"],
        agreement_score=agreement,
        combined_confidence=confidence,
        merged_impact=ExpectedImpact(**impact),
        risk_level=risk,
    )


def _engine(config, db, audit, bus=None):
    policy = PolicyEngine(config, db, audit)
    oscillation = OscillationEngine(config, db, audit)
    return TriageEngine(config, db, audit, policy, oscillation, bus=bus)


def test_priority_is_clamped():
    strong = _cf("Everything improves", agreement=1.0, confidence=1.0,
                 security=1.0, reliability=1.0, devex=1.0, performance=1.0)
    harmful = _cf("Everything regresses", agreement=0.0, confidence=0.0, risk="critical",
                  security=-1.0, reliability=-1.0)

    assert priority_score(strong, WEIGHTS) == 1.0
    assert priority_score(harmful, WEIGHTS) == 0.0


def test_category_and_loc():
    finding = _cf("Auth tokens never expire", security=0.5, reliability=0.25)
    assert infer_category(finding) == "security"
    assert infer_category(_cf("Retries are missing")) == "behavioral"
    assert estimate_loc(finding) == round(0.75 * 50)
    assert estimate_loc(finding, "high") == round(0.75 * 150)


def test_small_buckets_are_not_merged():
    same = [_cf("Retry failed upstream calls"), _cf("Retry failed upstream calls")]
    assert len(cluster_bucket(same, 0.15)) == 2

    three = same + [_cf("Retry failed upstream calls")]
    assert len(cluster_bucket(three, 0.15)) == 1


def test_escalations_are_not_proposals(config, db, audit):
    consensus = ConsensusResult(target="svc", findings=[
        _cf("Rate limits are unclear", agreement=0.2, confidence=0.3, reliability=0.4),
        _cf("Upstream calls lack retries", agreement=0.2, confidence=0.8, reliability=0.6),
    ])

    result = _engine(config, db, audit).triage(consensus)

    assert [e.claim for e in result.escalations] == ["Rate limits are unclear"]
    claims = [t.proposal.claim for t in result.proposals]
    assert claims == ["Upstream calls lack retries"]


def test_ranked_actionable_and_persisted(config, db, audit):
    events = []
    bus = EventBus()
    bus.subscribe(lambda e: events.append(e.event_type))
    consensus = ConsensusResult(target="svc", findings=[
        _cf("Upstream calls lack retries", "Wrap calls in exponential backoff", reliability=0.6),
        _cf("Auth tokens never expire", "Expire tokens after an hour", security=0.9, risk="medium"),
        _cf("Readme examples are stale", "Refresh the documentation examples"),
    ])

    result = _engine(config, db, audit, bus).triage(consensus, pipeline_id="pipe-1")

    scores = [t.priority_score for t in result.proposals]
    assert scores == sorted(scores, reverse=True)
    assert len(result.proposals) == 3
    assert len(db.list_proposals("svc", "triaged")) == 3
    assert events.count("proposal.triaged") == 3

    no_op = next(t for t in result.proposals if t.proposal.claim == "Readme examples are stale")
    assert no_op.is_no_op
    assert not no_op.actionable
    assert no_op.reason == NO_OP_REASON

    assert len(result.actionable) == 2
    for t in result.actionable:
        # Unregistered targets are advisory.
        assert t.policy.requires_approval
        assert 0.0 <= t.priority_score <= 1.0
        assert t.proposal.pipeline_id == "pipe-1"
    assert result.budget_remaining == config.defaults.change_budget_per_window - 2


def test_policy_block_makes_proposal_inactionable(config, db, audit):
    from refinery.models import TargetConfig

    db.upsert_target(TargetConfig(target="svc", allowed_categories=["docs"]))
    consensus = ConsensusResult(target="svc", findings=[
        _cf("Upstream calls lack retries", "Wrap calls in exponential backoff", reliability=0.6),
    ])

    result = _engine(config, db, audit).triage(consensus)

    assert result.actionable == []
    assert result.proposals[0].reason == "Blocked by policy violation"
    assert result.proposals[0].policy.violations[0].rule == "Category Restriction"


def test_priority_respects_weights():
    finding = _cf("Latency spikes", performance=1.0, agreement=0.0, confidence=0.0)
    assert priority_score(finding, {"performance": 0.5}) == pytest.approx(0.5)
    assert priority_score(finding, {}) == 0.0


def test_matching_decision_blocks_proposal(config, db, audit):
    from refinery.decision import ADRManager
    from refinery.models import ADRInput

    adr = ADRManager(config, db, audit).record(ADRInput(
        target="svc",
        title="The synchronous client blocks request threads",
        decision="Adopt an async client",
        confidence=0.7,
        min_confidence_margin=0.25,
    ))
    consensus = ConsensusResult(target="svc", findings=[
        _cf("The synchronous client blocks request threads", "Adopt an async client",
            confidence=0.9, risk="critical", performance=0.6),
    ])

    result = _engine(config, db, audit).triage(consensus)

    [item] = result.proposals
    assert item.oscillation.allowed is False
    assert item.oscillation.blocking_adr == adr.adr_id
    assert item.oscillation.confidence_gap == 0.2
    assert not item.actionable
    assert item.reason == "Blocked by anti-oscillation engine"
