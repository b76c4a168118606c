import pytest

from refinery.models import Evidence, ExpectedImpact, Finding, ResearchFeedEntry, RiskInfo
from refinery.research import ConsensusEngine, compute_consensus

SCHEMA_CLAIM = "Tool input schemas are not validated strictly"
SCHEMA_FIX = "Reject malformed tool arguments before dispatch"


def _finding(claim, recommendation, risk="low", url="https://example.com/schemas", **impact):
    return Finding(
        claim=claim,
        recommendation=recommendation,
        expected_impact=ExpectedImpact(**impact),
        risk=RiskInfo(level=risk),
        evidence=[Evidence(type="url", value=url, quality="B")],
    )


def _feeds():
    return [
        ResearchFeedEntry(target="svc", perspective="security", confidence=0.8, findings=[
            _finding(SCHEMA_CLAIM, SCHEMA_FIX, risk="high", security=0.8),
        ]),
        ResearchFeedEntry(target="svc", perspective="reliability", confidence=0.6, findings=[
            _finding(SCHEMA_CLAIM, SCHEMA_FIX, risk="medium", reliability=0.4),
        ]),
        ResearchFeedEntry(target="svc", perspective="devex", confidence=0.5, findings=[
            _finding("Error codes are undocumented", "Publish an error code table in the readme",
                     url="https://example.com/errors", devex=0.5),
        ]),
    ]


def test_agreement_is_share_of_perspectives():
    result = compute_consensus(_feeds(), "svc")

    assert result.perspectives_consulted == ["devex", "reliability", "security"]
    assert len(result.findings) == 2

    shared = next(f for f in result.findings if f.claim == SCHEMA_CLAIM)
    assert shared.supporting_perspectives == ["reliability", "security"]
    assert shared.agreement_score == pytest.approx(2 / 3)
    assert shared.combined_confidence == pytest.approx(0.7)
    assert shared.risk_level == "high"
    assert shared.merged_impact.security == pytest.approx(0.4)
    assert shared.merged_impact.reliability == pytest.approx(0.2)
    assert len(shared.merged_evidence) == 1

    alone = next(f for f in result.findings if f.claim != SCHEMA_CLAIM)
    assert alone.agreement_score == pytest.approx(1 / 3)
    assert result.overall_agreement == pytest.approx(0.5)


def test_order_does_not_matter():
    feeds = _feeds()
    forward = compute_consensus(feeds, "svc")
    backward = compute_consensus(list(reversed(feeds)), "svc")

    assert [f.model_dump() for f in forward.findings] == [f.model_dump() for f in backward.findings]
    assert forward.overall_agreement == backward.overall_agreement
    assert forward.feed_ids == backward.feed_ids


def test_empty_perspective_still_counts():
    feeds = _feeds() + [ResearchFeedEntry(target="svc", perspective="performance", findings=[])]
    result = compute_consensus(feeds, "svc")

    shared = next(f for f in result.findings if f.claim == SCHEMA_CLAIM)
    assert shared.agreement_score == pytest.approx(0.5)


def test_no_feeds_means_no_agreement():
    result = compute_consensus([], "svc")
    assert result.findings == []
    assert result.perspectives_consulted == []
    assert result.overall_agreement == 0.0


def test_same_perspective_never_agrees_with_itself():
    feed = ResearchFeedEntry(target="svc", perspective="security", findings=[
        _finding(SCHEMA_CLAIM, SCHEMA_FIX, security=0.5),
        _finding(SCHEMA_CLAIM, SCHEMA_FIX, security=0.3),
    ])
    result = compute_consensus([feed], "svc")
    assert len(result.findings) == 2
    assert all(f.agreement_score == 1.0 for f in result.findings)


def test_engine_persists_and_audits(config, db, audit):
    for feed in _feeds():
        db.insert_feed(feed)

    result = ConsensusEngine(config, db, audit).compute("svc", pipeline_id="pipe-1")

    assert db.get_consensus(result.consensus_id).findings == result.findings
    assert db.latest_consensus("svc").consensus_id == result.consensus_id
    assert audit.query(action="consensus.compute", correlation_id="pipe-1")
