from refinery.config_loader import RoutingConfig
from refinery.routing import ClassifyInput, classify_task
from refinery.routing.classifier import complexity_level, infer_domain


def test_trivial_task_goes_fast():
    result = classify_task(ClassifyInput(description="rename a variable"), RoutingConfig())
    assert result.complexity == "trivial"
    assert result.recommended_tier == "fast"
    assert not result.requires_multi_model
    assert result.recommended_models == [RoutingConfig().fast]


def test_security_architecture_is_critical():
    data = ClassifyInput(
        description="redesign auth",
        touches_security=True,
        touches_auth=True,
        is_architectural=True,
    )
    result = classify_task(data, RoutingConfig())

    assert result.risk_level == "high"
    assert result.complexity == "critical"
    assert result.requires_multi_model
    assert result.recommended_tier == "architect"
    assert result.recommended_models == [RoutingConfig().architect]


def test_user_request_forces_multi_model_pair():
    routing = RoutingConfig(architect_pair=["anthropic/a", "gemini/b", "openai/c"])
    result = classify_task(ClassifyInput(description="review this", user_requested_multi=True), routing)
    assert result.requires_multi_model
    assert result.recommended_models == ["anthropic/a", "gemini/b"]


def test_high_threshold_engages_on_high_risk():
    data = ClassifyInput(description="touch the login flow", touches_auth=True)
    assert not classify_task(data, RoutingConfig()).requires_multi_model
    assert classify_task(data, RoutingConfig(multi_model_threshold="high")).requires_multi_model


def test_levels_and_domains():
    assert [complexity_level(s) for s in (0, 2, 4, 8, 12)] == ["trivial", "simple", "moderate", "complex", "critical"]
    assert infer_domain("Tighten auth checks") == "security"
    assert infer_domain("Reduce p99 latency") == "performance"
    assert infer_domain("Rename a module") == "code"
