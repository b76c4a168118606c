import pytest

from refinery.config_loader import RefineryConfig
from refinery.routing import Router
from refinery.routing.router import BudgetExceededError, BudgetTracker, _build_kwargs


def test_resolve_tiers_and_models():
    router = Router(RefineryConfig())
    assert router.resolve_model("architect") == RefineryConfig().routing.architect
    assert router.resolve_model("openai/gpt-4o") == "openai/gpt-4o"
    with pytest.raises(ValueError):
        router.resolve_model("nonsense")


def test_reasoning_models_skip_temperature():
    messages = [{"role": "user", "content": "hi"}]
    assert "temperature" not in _build_kwargs("openai/o3-mini", messages, 0.3, 100)
    assert _build_kwargs("anthropic/claude", messages, 0.3, 100)["temperature"] == 0.3


def test_budget_tracker():
    tracker = BudgetTracker(max_tokens=10)
    assert tracker.tokens_remaining == 10
    tracker.usage.total_tokens = 12
    assert tracker.budget_exceeded
    assert tracker.summary()["tokens_remaining"] == 0


def test_budget_tracker_dollar_limit():
    tracker = BudgetTracker(max_tokens=1_000, max_dollars=0.5)
    tracker.usage.estimated_cost = 0.2
    assert tracker.dollars_remaining == pytest.approx(0.3)
    assert not tracker.budget_exceeded

    tracker.usage.estimated_cost = 0.5
    assert tracker.budget_exceeded
    assert tracker.summary()["dollars_remaining"] == 0.0


def test_router_reads_dollar_limit_from_config():
    config = RefineryConfig()
    config.routing.max_dollars_per_session = 2.5
    assert Router(config).budget.max_dollars == 2.5


class SpentBudget(BudgetTracker):
    checks = 0

    @property
    def budget_exceeded(self):
        self.checks += 1
        return True


def test_exhausted_budget_is_not_retried(monkeypatch):
    router = Router(RefineryConfig())
    router.budget = SpentBudget()
    monkeypatch.setattr("refinery.routing.router.litellm.completion", lambda **kw: pytest.fail("no call expected"))

    with pytest.raises(BudgetExceededError):
        router.complete("architect", [{"role": "user", "content": "hi"}])

    assert router.budget.checks == 1
