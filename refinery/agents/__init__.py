"""
REFINERY Agent Registry

Named specialists that the calling agent is asked to act as at each
step. Each agent is:
  - A role and a system prompt
  - The engine capabilities it drives
  - A preferred model tier for the router

Agents hold no state. State lives in the pipeline record.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from refinery.routing.classifier import Tier


class AgentProfile(BaseModel):
    agent_id: str
    name: str
    role: str
    system_prompt: str
    capabilities: list[str] = Field(default_factory=list)
    preferred_tier: Tier = "workhorse"

    def system_message(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}


AGENTS: dict[str, AgentProfile] = {a.agent_id: a for a in (
    AgentProfile(
        agent_id="researcher",
        name="Research Agent",
        role="Multi-perspective analysis of the target against its protocol, security baselines and best practice.",
        system_prompt=(
            "You are a meticulous researcher. Analyze the target from the perspective you are given. "
            "Every finding needs evidence. Quantify impact on a -1 to +1 scale. Do not soften risks."
        ),
        capabilities=["research.start", "research.store", "consensus.compute"],
        preferred_tier="workhorse",
    ),
    AgentProfile(
        agent_id="architect",
        name="Architecture Agent",
        role="Architecture decisions, ADRs and design review.",
        system_prompt=(
            "You are a senior software architect. You make binding decisions recorded as ADRs, "
            "each with a rationale and the alternatives you rejected."
        ),
        capabilities=["adr.record", "oscillation.check", "deliberation.start"],
        preferred_tier="architect",
    ),
    AgentProfile(
        agent_id="security_auditor",
        name="Security Auditor",
        role="Auth, input validation, secrets, dependency and supply-chain review.",
        system_prompt=(
            "You are a security auditor for LLM-integrated systems. Check for auth bypass, injection, "
            "secret leakage and vulnerable dependencies. Risk ratings must be evidence-backed."
        ),
        capabilities=["research.start", "scorecard.capture"],
        preferred_tier="architect",
    ),
    AgentProfile(
        agent_id="code_smith",
        name="Code Smith",
        role="Implementation and pull requests.",
        system_prompt=(
            "You write clean, typed, tested code. Every change goes through a pull request that "
            "lists its acceptance criteria. Follow the project's existing patterns."
        ),
        capabilities=["plan", "execute"],
        preferred_tier="workhorse",
    ),
    AgentProfile(
        agent_id="test_evaluator",
        name="Test Evaluator",
        role="Test strategy, scorecards and quality gates.",
        system_prompt=(
            "You evaluate changes against their acceptance criteria and the scorecard. "
            "Primary scorecard dimensions must never drop."
        ),
        capabilities=["scorecard.capture", "scorecard.compare"],
        preferred_tier="workhorse",
    ),
    AgentProfile(
        agent_id="governance_gate",
        name="Governance Gate",
        role="Policy enforcement, approvals and the audit trail.",
        system_prompt=(
            "You enforce policy. Nothing proceeds past a gate without a recorded human approval "
            "that acknowledges both the risk and the rollback plan."
        ),
        capabilities=["policy.evaluate", "governance.approval", "governance.escalation"],
        preferred_tier="fast",
    ),
    AgentProfile(
        agent_id="release_manager",
        name="Release Manager",
        role="Versioning, changelogs and the release lifecycle.",
        system_prompt="You cut releases with semantic versions and a changelog entry for every merged proposal.",
        capabilities=["release"],
        preferred_tier="fast",
    ),
)}

INTENT_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("security_auditor", ("security", "auth", "vulnerability")),
    ("architect", ("architecture", "design", "adr")),
    ("researcher", ("refine", "improve", "assess", "research")),
    ("code_smith", ("code", "implement", "fix", "pr")),
    ("test_evaluator", ("test", "quality", "scorecard")),
    ("release_manager", ("release", "publish", "deploy")),
]

OVERLAY_AGENTS: dict[str, list[str]] = {
    "research": ["researcher", "security_auditor"],
    "classify": ["architect"],
    "deliberate": ["architect"],
    "consult": ["architect"],
    "triage": ["researcher", "governance_gate"],
    "align": ["governance_gate"],
    "plan": ["code_smith"],
    "execute": ["code_smith", "test_evaluator"],
    "cleanup": ["code_smith"],
    "document": ["architect"],
    "release": ["release_manager"],
    "propagate": ["researcher"],
}


def get_agent(agent_id: str) -> AgentProfile | None:
    return AGENTS.get(agent_id)


def pick_agents_for_intent(intent: str) -> list[AgentProfile]:
    text = intent.lower()
    picked = [AGENTS[agent_id] for agent_id, words in INTENT_KEYWORDS if any(w in text for w in words)]
    return picked or [AGENTS["researcher"]]


def agents_for_overlay(overlay: str) -> list[str]:
    return [AGENTS[a].name for a in OVERLAY_AGENTS.get(overlay, [])]
