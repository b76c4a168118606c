import pytest

from refinery.research.ingestion import ResearchQuery, ResearchService, build_research_prompt, feed_confidence
from refinery.research.normalizer import FindingValidationError, normalize_findings


def _raw(**overrides):
    item = {
        "claim": "  Secrets are logged on startup ",
        "recommendation": "Redact secrets before logging",
        "expected_impact": {"reliability": 0.0, "security": 1.7, "devex": 0, "performance": -0.2},
        "risk": {"level": "high", "notes": "leaks credentials"},
        "evidence": [{"type": "url", "value": "https://example.com/log", "quality": "A"},
                     {"type": "tweet", "value": "someone said so", "quality": "Z"}],
    }
    item.update(overrides)
    return item


def test_normalizes_a_valid_batch():
    findings = normalize_findings([_raw()])

    assert len(findings) == 1
    finding = findings[0]
    assert finding.claim == "Secrets are logged on startup"
    assert finding.expected_impact.security == 1.0
    assert finding.expected_impact.performance == -0.2
    assert finding.risk.level == "high"
    assert finding.evidence[1].type == "quote"
    assert finding.evidence[1].quality == "C"


def test_rejects_the_whole_batch_with_every_problem():
    bad = [_raw(claim=""), _raw(risk={"level": "catastrophic"}), "not an object"]

    with pytest.raises(FindingValidationError) as exc:
        normalize_findings(bad)

    problems = exc.value.problems
    assert "[0] missing claim" in problems
    assert any(p.startswith("[1] risk.level") for p in problems)
    assert "[2] finding must be an object" in problems


def test_rejects_non_list():
    with pytest.raises(FindingValidationError):
        normalize_findings({"claim": "x"})


def test_impact_fields_must_be_numbers():
    with pytest.raises(FindingValidationError) as exc:
        normalize_findings([_raw(expected_impact={"reliability": "high", "security": 0, "devex": 0})])
    assert "[0] expected_impact.reliability must be a number" in exc.value.problems
    assert "[0] expected_impact.performance missing" in exc.value.problems


def test_feed_confidence_rewards_evidence():
    assert feed_confidence([]) == 0.1
    findings = normalize_findings([_raw()])
    # 0.3 base + 0.2 evidence density + 0.05 for one A-quality item
    assert feed_confidence(findings) == pytest.approx(0.55)


def test_prompt_carries_lessons_and_shape():
    prompt = build_research_prompt(ResearchQuery(target="svc", lessons=["Cite the protocol docs"]), "security")
    assert "security perspective" in prompt
    assert "- Cite the protocol docs" in prompt
    assert '"findings"' in prompt


def test_store_records_feed(db, audit):
    service = ResearchService(db, audit)
    prompts = service.start(ResearchQuery(target="svc"), ["security", "devex"])
    assert [p.perspective for p in prompts] == ["security", "devex"]

    entry = service.store("svc", "security", prompts[0].prompt_hash, normalize_findings([_raw()]), pipeline_id="pipe-1")
    assert db.research_feeds("svc")[0].feed_id == entry.feed_id
    assert entry.pipeline_id == "pipe-1"
