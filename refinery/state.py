"""
REFINERY Pipeline State — the orchestrator's working memory.

One PipelineState record per pipeline, persisted in the `pipelines`
collection. Each overlay owns a typed payload in `payloads`, keyed by
overlay name and discriminated by its `overlay` field, so steps never
share an untyped bag.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from refinery.models import new_id, now_iso
from refinery.routing.classifier import TaskClassification

OverlayName = Literal[
    "research", "classify", "deliberate", "triage", "align", "plan",
    "execute", "cleanup", "document", "release", "propagate", "consult",
]
PipelineStatus = Literal["running", "waiting_agent", "waiting_user", "completed", "error", "cancelled"]
CommandName = Literal["refine", "assess", "review", "improve", "audit", "consult"]

TERMINAL_STATUSES: tuple[str, ...] = ("completed", "error", "cancelled")


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

class PipelineInputs(BaseModel):
    """What the caller supplied when the pipeline started."""
    name: str = ""
    description: str = ""
    repo_url: str = ""
    context: str = ""
    tools: list[str] = Field(default_factory=list)
    research_content: str = ""
    multi_model: bool = False


# ---------------------------------------------------------------------------
# Per-overlay payloads
# ---------------------------------------------------------------------------

class PerspectivePrompt(BaseModel):
    perspective: str
    prompt: str
    prompt_hash: str


class ResearchPayload(BaseModel):
    overlay: Literal["research"] = "research"
    external_content: bool = False
    prompts: list[PerspectivePrompt] = Field(default_factory=list)
    perspectives_done: int = 0
    feed_ids: list[str] = Field(default_factory=list)
    consensus_id: str | None = None
    findings_count: int = 0
    agreement: float | None = None

    @property
    def perspectives(self) -> list[str]:
        return [p.perspective for p in self.prompts]

    @property
    def next_prompt(self) -> PerspectivePrompt | None:
        if self.perspectives_done < len(self.prompts):
            return self.prompts[self.perspectives_done]
        return None


class ClassifyPayload(BaseModel):
    overlay: Literal["classify"] = "classify"
    requires_multi_model: bool = False
    inserted: list[str] = Field(default_factory=list)


class DeliberatePayload(BaseModel):
    overlay: Literal["deliberate", "consult"] = "deliberate"
    session_id: str | None = None
    notes: str = ""


class TriagePayload(BaseModel):
    overlay: Literal["triage"] = "triage"
    consensus_id: str | None = None
    proposal_ids: list[str] = Field(default_factory=list)
    actionable_ids: list[str] = Field(default_factory=list)
    escalations: list[str] = Field(default_factory=list)
    budget_remaining: int = 0
    top_proposal_id: str | None = None
    approved: bool = False


class AlignPayload(BaseModel):
    overlay: Literal["align"] = "align"
    summary: str = ""
    requests: int = 0


class StagePayload(BaseModel):
    overlay: Literal["plan", "execute", "cleanup", "document", "release"]
    completed: bool = False
    notes: str = ""


class PropagatePayload(BaseModel):
    overlay: Literal["propagate"] = "propagate"
    universal_claims: list[str] = Field(default_factory=list)
    other_targets: list[str] = Field(default_factory=list)
    skipped: str = ""


OverlayPayload = Annotated[
    Union[
        ResearchPayload, ClassifyPayload, DeliberatePayload, TriagePayload,
        AlignPayload, StagePayload, PropagatePayload,
    ],
    Field(discriminator="overlay"),
]

_PAYLOAD_TYPES: dict[str, type[BaseModel]] = {
    "research": ResearchPayload,
    "classify": ClassifyPayload,
    "deliberate": DeliberatePayload,
    "consult": DeliberatePayload,
    "triage": TriagePayload,
    "align": AlignPayload,
    "plan": StagePayload,
    "execute": StagePayload,
    "cleanup": StagePayload,
    "document": StagePayload,
    "release": StagePayload,
    "propagate": PropagatePayload,
}


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------

class Transition(BaseModel):
    kind: Literal["start", "advance", "skip", "insert", "status"]
    overlay: str | None = None
    detail: str = ""
    overlays: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)


class PipelineState(BaseModel):
    pipeline_id: str = Field(default_factory=lambda: new_id("pipe"))
    target: str
    command: CommandName
    intent: str = ""
    inputs: PipelineInputs = Field(default_factory=PipelineInputs)
    classification: TaskClassification | None = None
    agents: list[str] = Field(default_factory=list)

    overlays: list[OverlayName]
    overlay_index: int = 0
    step_within_overlay: int = 0
    status: PipelineStatus = "running"
    error: str | None = None

    payloads: dict[str, OverlayPayload] = Field(default_factory=dict)
    transitions: list[Transition] = Field(default_factory=list)

    version: int = 0
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    @property
    def current_overlay(self) -> str | None:
        if self.overlay_index < len(self.overlays):
            return self.overlays[self.overlay_index]
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def remaining_overlays(self) -> list[str]:
        return list(self.overlays[self.overlay_index + 1:])

    def payload(self, overlay: str) -> Any:
        """The typed payload for *overlay*, created on first use."""
        if overlay not in self.payloads:
            self.payloads[overlay] = _PAYLOAD_TYPES[overlay](overlay=overlay)
        return self.payloads[overlay]

    def log(self, kind: str, detail: str = "", **kwargs) -> None:
        self.transitions.append(Transition(kind=kind, overlay=self.current_overlay, detail=detail, **kwargs))


# ---------------------------------------------------------------------------
# Step results
# ---------------------------------------------------------------------------

class NextAction(BaseModel):
    """Who acts next: `agent` may continue on its own, `user` is a hard stop."""
    control: Literal["agent", "user"]
    description: str
    instruction: str = ""


class StepResult(BaseModel):
    pipeline_id: str
    overlay: str
    status: PipelineStatus
    message: str
    next: NextAction
    agents: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
