"""
REFINERY Router — Vendor-Agnostic Model Abstraction

Routes deliberation calls through LiteLLM so the engine never knows
which vendor is backing a tier. Handles budget tracking, retries,
credential checks and structured logging.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from refinery.config_loader import RefineryConfig

TIERS = ("architect", "workhorse", "fast")


class BudgetExceededError(Exception):
    pass


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class BudgetTracker:
    """Tracks token and dollar spend per session."""
    max_tokens: int = 200_000
    max_dollars: float = 10.0
    usage: UsageRecord = field(default_factory=UsageRecord)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.max_tokens - self.usage.total_tokens)

    @property
    def dollars_remaining(self) -> float:
        return max(0.0, self.max_dollars - self.usage.estimated_cost)

    @property
    def budget_exceeded(self) -> bool:
        return self.usage.total_tokens >= self.max_tokens or self.usage.estimated_cost >= self.max_dollars

    def record(self, response: Any) -> None:
        """Record usage from a LiteLLM response."""
        usage = getattr(response, "usage", None)
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.usage.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            self.usage.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as e:
            # Unknown models have no price table entry.
            logger.debug(f"[ROUTER] No cost estimate: {e}")

        self.usage.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
            "tokens_remaining": self.tokens_remaining,
            "dollars_remaining": round(self.dollars_remaining, 4),
        }


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_reasoning_model(model: str) -> bool:
    """GPT-5 and o-series models don't take a custom temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("gpt-5", "o1", "o3", "o4"))


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }
    if not _is_reasoning_model(model):
        kwargs["temperature"] = temperature
    return kwargs


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


class Router:
    """
    Vendor-agnostic model router.

    Callers pass a tier name or a full LiteLLM model string.
    """

    def __init__(self, config: RefineryConfig):
        self.config = config
        self.budget = BudgetTracker(
            max_tokens=config.routing.max_tokens_per_session,
            max_dollars=config.routing.max_dollars_per_session,
        )
        self._tier_model_map = {tier: getattr(config.routing, tier) for tier in TIERS}
        self._lock = threading.Lock()

        litellm.suppress_debug_info = True

    def resolve_model(self, tier_or_model: str) -> str:
        if tier_or_model in self._tier_model_map:
            return self._tier_model_map[tier_or_model]
        if "/" in tier_or_model:
            return tier_or_model
        raise ValueError(f"Unknown tier or model: {tier_or_model}. Tiers: {list(self._tier_model_map)}")

    def can_call(self, tier_or_model: str) -> bool:
        """True when the provider's credentials are present in the environment."""
        model = self.resolve_model(tier_or_model)
        try:
            env = litellm.validate_environment(model=model)
        except Exception as e:
            logger.debug(f"[ROUTER] Cannot validate {model}: {e}")
            return False
        return bool(env.get("keys_in_environment"))

    @retry(
        retry=retry_if_not_exception_type(BudgetExceededError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    def complete(
        self,
        tier_or_model: str,
        messages: list[dict[str, str]],
        temperature: float = 0.3,
        max_tokens: int = 8192,
    ) -> RouterResponse:
        """Send a completion request through LiteLLM.

        Raises:
            BudgetExceededError: If the session token or dollar budget is spent.
        """
        if self.budget.budget_exceeded:
            raise BudgetExceededError(f"Budget exceeded: {self.budget.summary()}")

        model = self.resolve_model(tier_or_model)
        start = time.monotonic()

        logger.debug(f"[ROUTER] {tier_or_model} → {model} ({len(messages)} messages)")

        response = litellm.completion(**_build_kwargs(model, messages, temperature, max_tokens))
        elapsed_ms = int((time.monotonic() - start) * 1000)

        with self._lock:
            self.budget.record(response)

        content = response.choices[0].message.content or ""
        logger.debug(
            f"[ROUTER] {model} complete — "
            f"{self.budget.usage.total_tokens} tokens, "
            f"${self.budget.usage.estimated_cost:.4f}, "
            f"{elapsed_ms}ms"
        )

        return RouterResponse(
            content=content,
            model=model,
            tokens_used=getattr(getattr(response, "usage", None), "total_tokens", 0) or 0,
            cost=self.budget.usage.estimated_cost,
            latency_ms=elapsed_ms,
        )
