from datetime import timedelta

import pytest

from refinery.decision import ADRManager, OscillationEngine, ScorecardEngine, ScorecardInput
from refinery.decision.oscillation import degrading_dimensions, is_no_op, should_flip
from refinery.decision.scorecard import SecurityMetrics
from refinery.models import ADR, ADRInput, ExpectedImpact, ImprovementProposal, utc_now


def _adr(confidence=0.7, hours=72, margin=0.25):
    now = utc_now()
    return ADR(
        target="svc",
        title="Keep the synchronous client",
        decision="Stay synchronous",
        confidence=confidence,
        cooldown_until=(now + timedelta(hours=hours)).isoformat(),
        min_confidence_margin=margin,
    ), now


def _proposal(**kwargs):
    fields = dict(
        target="svc",
        title="Switch to an async client",
        claim="The synchronous client blocks",
        recommendation="Adopt an async client",
        expected_impact=ExpectedImpact(performance=0.6),
        estimated_loc=120,
    )
    fields.update(kwargs)
    return ImprovementProposal(**fields)


def test_small_lead_inside_cooldown_is_blocked():
    adr, now = _adr()
    decision = should_flip(adr, 0.9, now)
    assert not decision.should_flip
    assert decision.confidence_gap == pytest.approx(0.2)
    assert decision.cooldown_remaining_hours == pytest.approx(72)
    assert "72h remaining" in decision.reason


def test_margin_lead_inside_cooldown_flips():
    adr, now = _adr()
    assert should_flip(adr, 0.95, now).should_flip


def test_expired_cooldown_flips():
    adr, now = _adr(hours=-1)
    decision = should_flip(adr, 0.1, now)
    assert decision.should_flip
    assert decision.cooldown_remaining_hours == 0.0


def test_verdict_is_repeatable():
    adr, now = _adr()
    assert should_flip(adr, 0.8, now) == should_flip(adr, 0.8, now)


def test_no_op_detection():
    assert is_no_op(_proposal(expected_impact=ExpectedImpact()))
    assert is_no_op(_proposal(category="prompt_only", estimated_loc=3))
    assert is_no_op(_proposal(scorecard_baseline={"overall": 0.5}, scorecard_target={"overall": 0.5005}))
    assert not is_no_op(_proposal())


def test_engine_blocks_against_referenced_adr(config, db, audit):
    adr = ADRManager(config, db, audit).record(ADRInput(
        target="svc", title="Keep the synchronous client", decision="Stay synchronous", confidence=0.7,
    ))
    engine = OscillationEngine(config, db, audit)
    proposal = _proposal(adr_refs=[adr.adr_id])
    now = utc_now()

    first = engine.check(proposal, 0.9, now)
    second = engine.check(proposal, 0.9, now)

    assert not first.allowed
    assert first.blocking_adr == adr.adr_id
    assert first.required_margin == 0.25
    assert first.model_dump() == second.model_dump()
    assert audit.query(action="oscillation.blocked")

    assert engine.check(proposal, 0.95, now).allowed


def test_engine_blocks_primary_degradation(config, db, audit):
    ScorecardEngine(db, audit).capture(ScorecardInput(
        target="svc", security=SecurityMetrics(secrets_scan_clean=True),
    ))
    engine = OscillationEngine(config, db, audit)

    result = engine.check(_proposal(scorecard_target={"Security": 0.1, "Reliability": 0.0}), 0.9)

    assert not result.allowed
    assert result.degrading_dimensions == ["Security"]
    assert result.blocking_adr is None


def test_degrading_dimensions_without_baseline():
    assert degrading_dimensions(None, {"Security": 0.0}) == []


def test_no_conflict_is_allowed(config, db, audit):
    result = OscillationEngine(config, db, audit).check(_proposal(), 0.5)
    assert result.allowed
    assert result.reason == "No conflicting ADR found"


def test_stability_counts_flips(config, db, audit):
    manager = ADRManager(config, db, audit)
    adr = manager.record(ADRInput(target="svc", title="Use pooling", decision="Pool connections"))
    manager.supersede(adr.adr_id, ADRInput(target="svc", title="Drop pooling", decision="Open per request"))

    stability = OscillationEngine(config, db, audit).stability_score("svc")
    assert stability["total_decisions"] == 2
    assert stability["flips_in_window"] == 1
    assert stability["stability_score"] == pytest.approx(0.5)


def test_reversion_detection(config, db, audit):
    adr = ADRManager(config, db, audit).record(ADRInput(
        target="svc", title="Switch to an async client", decision="The synchronous client blocks",
        rationale="Adopt an async client",
    ))
    engine = OscillationEngine(config, db, audit)

    reversion = engine.detect_reversion(_proposal())
    assert reversion["is_reversion"]
    assert reversion["similar_decisions"] == [adr.adr_id]
    assert reversion["similarity_score"] == pytest.approx(1.0)

    unrelated = engine.detect_reversion(_proposal(
        title="Refresh readme examples", claim="Docs drift", recommendation="Regenerate snippets",
    ))
    assert unrelated == {"is_reversion": False, "similar_decisions": [], "similarity_score": 0.0}
