import pytest

from refinery.decision import PolicyEngine, autonomy_requires_approval
from refinery.models import ExpectedImpact, ImprovementProposal, TargetConfig


def _proposal(**kwargs):
    fields = dict(
        target="svc",
        title="Add retries",
        claim="Upstream calls lack retries",
        recommendation="Wrap calls in exponential backoff",
        expected_impact=ExpectedImpact(reliability=0.6),
        estimated_loc=40,
    )
    fields.update(kwargs)
    return ImprovementProposal(**fields)


@pytest.mark.parametrize("autonomy,risk,expected", [
    ("advisory", "low", True),
    ("pr_only", "low", True),
    ("auto_merge", "medium", False),
    ("auto_merge", "high", True),
    ("auto_release", "high", False),
    ("auto_release", "critical", True),
    ("unknown", "low", True),
])
def test_autonomy_table(autonomy, risk, expected):
    assert autonomy_requires_approval(autonomy, risk) is expected


def test_unregistered_target_needs_approval(config, db, audit):
    evaluation = PolicyEngine(config, db, audit).evaluate(_proposal())
    assert evaluation.allowed
    assert evaluation.requires_approval


def test_category_restriction_blocks(config, db, audit):
    db.upsert_target(TargetConfig(target="svc", autonomy_level="auto_merge", allowed_categories=["docs"]))

    evaluation = PolicyEngine(config, db, audit).evaluate(_proposal())

    assert not evaluation.allowed
    assert evaluation.violations[0].rule == "Category Restriction"
    assert audit.query(action="policy.violation")


def test_oversized_change_is_only_a_warning(config, db, audit):
    db.upsert_target(TargetConfig(target="svc", autonomy_level="auto_merge", max_loc_per_pr=100))

    evaluation = PolicyEngine(config, db, audit).evaluate(_proposal(estimated_loc=400))

    assert evaluation.allowed
    assert not evaluation.requires_approval
    assert [v.severity for v in evaluation.violations] == ["warning"]


def test_change_budget_blocks(config, db, audit):
    db.upsert_target(TargetConfig(target="svc", autonomy_level="auto_merge", change_budget_per_window=1))
    db.insert_proposal(_proposal(status="in_progress"))

    evaluation = PolicyEngine(config, db, audit).evaluate(_proposal())

    assert not evaluation.allowed
    assert evaluation.violations[0].rule == "Change Budget"


def test_seeded_rules_gate_risk(config, db, audit):
    engine = PolicyEngine(config, db, audit)
    assert len(engine.seed_defaults()) == 3
    assert engine.seed_defaults() == []

    db.upsert_target(TargetConfig(target="svc", autonomy_level="auto_release"))
    assert not engine.evaluate(_proposal(risk_level="medium")).requires_approval
    assert engine.evaluate(_proposal(risk_level="high")).requires_approval


def test_scope_rule(config, db, audit):
    from refinery.models import PolicyRule

    db.insert_policy(PolicyRule(name="Scope", category="scope", params={"allowed_servers": ["other"]}))
    evaluation = PolicyEngine(config, db, audit).evaluate(_proposal())
    assert not evaluation.allowed
    assert "not in the allowed scope" in evaluation.violations[0].message
