"""
REFINERY Orchestrator — The Pipeline Brainstem

It is NOT smart. It is deterministic.

Responsibilities:
  - Resolve an intent into a command and an overlay plan
  - Execute exactly one step of the current overlay per call
  - Delegate to the research, decision and governance engines
  - Hand control back to the calling agent or to the human
  - Persist the pipeline after every step (optimistic versioning)
  - Record feedback when a pipeline completes

It never analyzes anything and never approves anything.
"""

from __future__ import annotations

from typing import Any, Callable

from loguru import logger

from refinery.agents import AGENTS, agents_for_overlay, pick_agents_for_intent
from refinery.audit_logger import AuditLog
from refinery.config_loader import RefineryConfig
from refinery.decision import OscillationEngine, PolicyEngine, TriageEngine
from refinery.event_bus import EventBus
from refinery.governance import GovernanceGate
from refinery.models import ConsensusResult, FeedbackEntry, TargetConfig, now_iso
from refinery.research import ConsensusEngine, ResearchQuery, ResearchService
from refinery.research.normalizer import FindingValidationError, normalize_findings, validate_findings
from refinery.routing.classifier import ClassifyInput, classify_task
from refinery.state import (
    NextAction,
    PerspectivePrompt,
    PipelineInputs,
    PipelineState,
    StepResult,
)
from refinery.storage import Database, RecordNotFoundError, StaleRecordError

SELF_TARGET = "self"
SELF_ALIASES = frozenset({"self", "mr", "m-r", "refinery"})
SELF_TOOLS = [
    "refine", "next", "status", "cancel", "purge", "approve", "register",
    "ingest", "consensus", "triage", "decide", "decisions", "audit", "doctor",
]

COMMAND_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("refine", ("refine", "full", "complete")),
    ("assess", ("assess", "evaluate", "score")),
    ("review", ("review", "deliberat", "architect")),
    ("improve", ("improve", "fix", "enhance")),
    ("audit", ("audit", "security", "compliance")),
    ("consult", ("consult", "ask", "question")),
]

COMMAND_OVERLAYS: dict[str, list[str]] = {
    "refine": ["research", "classify", "triage", "align", "plan", "execute", "cleanup", "document", "release", "propagate"],
    "assess": ["research", "classify"],
    "review": ["classify", "deliberate", "align"],
    "improve": ["research", "triage", "align", "plan", "execute", "cleanup", "document"],
    "audit": ["research", "classify"],
    "consult": ["classify", "deliberate", "align"],
}

OVERLAY_LABELS: dict[str, str] = {
    "research": "Research",
    "classify": "Classify",
    "deliberate": "Deliberate",
    "triage": "Triage",
    "align": "Alignment Gate",
    "plan": "Plan",
    "execute": "Execute",
    "cleanup": "Cleanup",
    "document": "Document",
    "release": "Release",
    "propagate": "Propagate",
    "consult": "Consult",
}

UNIVERSAL_AGREEMENT = 0.6
CONTENT_PREVIEW_CHARS = 2000


class PipelineNotFoundError(RecordNotFoundError):
    def __init__(self, pipeline_id: str):
        super().__init__(
            "pipelines", pipeline_id,
            "Run `refinery status` to see the active pipeline, or start one with `refinery refine`.",
        )


# ---------------------------------------------------------------------------
# Pure planning helpers
# ---------------------------------------------------------------------------

def normalize_target(target: str) -> str:
    return SELF_TARGET if target.strip().lower() in SELF_ALIASES else target.strip()


def classify_intent(intent: str) -> str:
    text = intent.lower()
    for command, words in COMMAND_KEYWORDS:
        if any(w in text for w in words):
            return command
    return "refine"


def build_overlay_plan(command: str, has_research_content: bool = False, requires_multi_model: bool = False) -> list[str]:
    overlays = list(COMMAND_OVERLAYS[command])
    if has_research_content and "research" not in overlays:
        overlays.insert(0, "research")
    if requires_multi_model and "deliberate" not in overlays and "classify" in overlays:
        overlays.insert(overlays.index("classify") + 1, "deliberate")
    return overlays


def research_perspectives(command: str, has_research_content: bool) -> list[str]:
    if command == "audit":
        return ["security", "compliance"]
    if has_research_content:
        return ["security", "reliability", "devex", "performance"]
    return ["security", "reliability", "compliance", "devex", "performance"]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    """Drives pipelines one step at a time."""

    def __init__(
        self,
        config: RefineryConfig,
        db: Database | None = None,
        audit: AuditLog | None = None,
        bus: EventBus | None = None,
        deliberation=None,
    ):
        self.config = config
        self.audit = audit or AuditLog(config.data_path)
        self.bus = bus or EventBus()
        self.db = db or Database(config.data_path, bus=self.bus, audit=self.audit)
        self.deliberation = deliberation

        self.research = ResearchService(self.db, self.audit)
        self.consensus = ConsensusEngine(config, self.db, self.audit)
        self.policy = PolicyEngine(config, self.db, self.audit)
        self.oscillation = OscillationEngine(config, self.db, self.audit)
        self.triage = TriageEngine(config, self.db, self.audit, self.policy, self.oscillation, bus=self.bus)
        self.governance = GovernanceGate(self.db, self.audit)

        self._handlers: dict[str, Callable[[PipelineState, dict[str, Any]], StepResult | None]] = {
            "research": self._research,
            "classify": self._classify,
            "deliberate": self._deliberate,
            "consult": self._deliberate,
            "triage": self._triage,
            "align": self._align,
            "plan": self._stage,
            "execute": self._stage,
            "cleanup": self._stage,
            "document": self._stage,
            "release": self._release,
            "propagate": self._propagate,
        }

    # -- persistence --------------------------------------------------------

    def _load(self, pipeline_id: str) -> PipelineState:
        record = self.db["pipelines"].get(pipeline_id)
        if record is None:
            raise PipelineNotFoundError(pipeline_id)
        return PipelineState(**record)

    def _save(self, state: PipelineState) -> None:
        state.updated_at = now_iso()
        stored = self.db["pipelines"].replace(state.model_dump(), expected_version=state.version)
        state.version = stored["version"]

    # -- public API ---------------------------------------------------------

    def start(
        self,
        target: str,
        intent: str = "",
        name: str = "",
        description: str = "",
        repo_url: str = "",
        context: str = "",
        tools: list[str] | None = None,
        research_content: str = "",
        multi_model: bool = False,
        command: str | None = None,
    ) -> StepResult:
        target = normalize_target(target)
        inputs = PipelineInputs(
            name=name or target,
            description=description,
            repo_url=repo_url,
            context=context,
            tools=tools or [],
            research_content=research_content,
            multi_model=multi_model,
        )
        if target == SELF_TARGET:
            self._inject_self_context(inputs)

        command = command or classify_intent(intent)
        overlays = build_overlay_plan(command, bool(research_content))
        classification = classify_task(ClassifyInput(
            description=intent or command,
            is_architectural=command == "review",
            touches_security=command == "audit",
            user_requested_multi=multi_model or command in ("review", "consult"),
        ), self.config.routing)

        self._ensure_target(target)

        state = PipelineState(
            target=target,
            command=command,
            intent=intent,
            inputs=inputs,
            classification=classification,
            agents=[a.agent_id for a in pick_agents_for_intent(intent)],
            overlays=overlays,
        )
        state.log("start", f"command={command}", overlays=list(overlays))
        stored = self.db["pipelines"].insert(state.model_dump())
        state.version = stored["version"]

        self.audit.record("pipeline.start", "orchestrator", "pipeline", state.pipeline_id, {
            "target": target, "command": command, "overlays": overlays, "agents": state.agents,
        }, correlation_id=state.pipeline_id)
        logger.info(f"[PIPELINE] {state.pipeline_id} started: {command} on {target} ({' → '.join(overlays)})")

        return self._run(state, {})

    def advance(
        self,
        pipeline_id: str,
        agent_input: dict[str, Any] | None = None,
        force_advance: bool = False,
    ) -> StepResult:
        state = self._load(pipeline_id)
        agent_input = agent_input or {}

        if state.is_terminal:
            return self._terminal_result(state)

        if "findings" in agent_input:
            try:
                validate_findings(agent_input["findings"])
            except FindingValidationError as e:
                logger.warning(f"[PIPELINE] {pipeline_id}: rejected findings ({len(e.problems)} problem(s))")
                return self._result(
                    state, "waiting_agent", f"Findings rejected: {e}",
                    NextAction(
                        control="agent",
                        description="Fix the findings and resubmit. The pipeline was not changed.",
                        instruction="\n".join(f"- {p}" for p in e.problems),
                    ),
                )

        if force_advance:
            skipped = state.current_overlay
            self.audit.record("pipeline.advance", "orchestrator", "pipeline", state.pipeline_id, {
                "action": "force_advance", "skipped_overlay": skipped,
            }, correlation_id=state.pipeline_id)
            state.log("skip", f"force_advance past {skipped}")
            logger.warning(f"[PIPELINE] {pipeline_id}: force-advancing past {skipped}")
            self._next_overlay(state)
        else:
            state.step_within_overlay += 1

        return self._run(state, agent_input)

    def status(self, pipeline_id: str) -> PipelineState:
        return self._load(pipeline_id)

    def active_pipeline(self, target: str | None = None) -> PipelineState | None:
        wanted = normalize_target(target) if target else None
        active = [
            PipelineState(**r) for r in self.db["pipelines"].list()
            if r["status"] not in ("completed", "error", "cancelled")
            and (wanted is None or r["target"] == wanted)
        ]
        if not active:
            return None
        return max(active, key=lambda p: p.updated_at)

    def cancel(self, pipeline_id: str, reason: str = "Cancelled by user") -> PipelineState:
        state = self._load(pipeline_id)
        if state.is_terminal:
            return state

        overlay = state.current_overlay
        state.status = "cancelled"
        state.error = reason
        state.log("status", f"cancelled: {reason}")
        self._save(state)

        self.audit.record("pipeline.cancel", "user", "pipeline", pipeline_id, {
            "reason": reason, "cancelled_at_overlay": overlay, "overlay_index": state.overlay_index,
        }, correlation_id=pipeline_id)
        logger.info(f"[PIPELINE] {pipeline_id} cancelled at {overlay}: {reason}")
        return state

    def purge_stuck(self, reason: str = "Purged: orphaned pipeline from a prior session") -> dict[str, Any]:
        purged = []
        for record in self.db["pipelines"].list(lambda r: r["status"] not in ("completed", "error", "cancelled")):
            state = PipelineState(**record)
            was_at = state.current_overlay or "done"
            try:
                self.cancel(state.pipeline_id, reason)
            except StaleRecordError as e:
                logger.warning(f"[PIPELINE] Skipped purge of {state.pipeline_id}: {e}")
                continue
            purged.append({"pipeline_id": state.pipeline_id, "was_at": was_at, "target": state.target})
        logger.info(f"[PIPELINE] Purged {len(purged)} pipeline(s)")
        return {"purged": len(purged), "pipelines": purged}

    def overlay_requirements(self, state: PipelineState) -> dict[str, Any]:
        overlay = state.current_overlay
        if overlay is None or state.is_terminal:
            return {"status": state.status}

        base = {
            "current_overlay": overlay,
            "step": state.step_within_overlay,
            "can_force_advance": True,
            "force_advance_hint": f"refinery next {state.pipeline_id} --force",
        }
        if overlay == "research":
            payload = state.payload("research")
            perspectives = payload.perspectives or research_perspectives(
                state.command, bool(state.inputs.research_content))
            nxt = payload.next_prompt
            return {
                **base,
                "waiting_for": "research_findings",
                "has_external_content": payload.external_content,
                "perspectives_required": perspectives,
                "perspectives_completed": payload.perspectives_done,
                "perspectives_total": len(perspectives),
                "next_perspective": nxt.perspective if nxt else None,
                "data_format": "findings list of {claim, recommendation, expected_impact, risk, evidence}",
            }
        if overlay == "align":
            return {
                **base,
                "waiting_for": "user_approval",
                "approval": {"target_type": "pipeline", "target_id": state.pipeline_id},
                "alignment_summary": state.payload("align").summary or None,
            }
        if overlay == "triage":
            payload = state.payload("triage")
            return {
                **base,
                "waiting_for": "proposal_approval" if payload.top_proposal_id else "triage_completion",
                "approval": {"target_type": "proposal", "target_id": payload.top_proposal_id},
            }
        if overlay in ("plan", "execute", "cleanup", "document", "deliberate", "consult"):
            return {**base, "waiting_for": "agent_action"}
        if overlay in ("release", "propagate"):
            return {**base, "waiting_for": "user_confirmation"}
        return base

    # -- state machine ------------------------------------------------------

    def _next_overlay(self, state: PipelineState) -> None:
        leaving = state.current_overlay
        state.overlay_index = min(state.overlay_index + 1, len(state.overlays))
        state.step_within_overlay = 0
        state.log("advance", f"{leaving} → {state.current_overlay or 'done'}")

    def _run(self, state: PipelineState, agent_input: dict[str, Any]) -> StepResult:
        overlay = state.current_overlay
        try:
            result = self._execute(state, agent_input)
        except Exception as e:
            logger.exception(f"[PIPELINE] {state.pipeline_id}: overlay {overlay} failed")
            state.status = "error"
            state.error = f'Overlay "{state.current_overlay}" failed: {e}'
            state.log("status", state.error)
            self.audit.record("pipeline.error", "orchestrator", "pipeline", state.pipeline_id, {
                "overlay": state.current_overlay, "error": str(e),
            }, correlation_id=state.pipeline_id)
            result = self._terminal_result(state)

        self._save(state)
        return result

    def _execute(self, state: PipelineState, agent_input: dict[str, Any]) -> StepResult:
        while True:
            overlay = state.current_overlay
            if overlay is None:
                return self._complete(state, f"All {len(state.overlays)} overlays finished.")

            state.status = "running"
            result = self._handlers[overlay](state, agent_input)
            if result is not None:
                return result

            self._next_overlay(state)
            agent_input = {}

    # -- results ------------------------------------------------------------

    def _result(
        self,
        state: PipelineState,
        status: str,
        message: str,
        next_action: NextAction,
        data: dict[str, Any] | None = None,
    ) -> StepResult:
        overlay = state.current_overlay or "done"
        agents = agents_for_overlay(overlay) or [AGENTS[a].name for a in state.agents if a in AGENTS]
        return StepResult(
            pipeline_id=state.pipeline_id,
            overlay=overlay,
            status=status,
            message=message,
            next=next_action,
            agents=agents,
            data={
                "command": state.command,
                "overlays": list(state.overlays),
                "overlay_index": state.overlay_index,
                "step": state.step_within_overlay,
                "progress": f"{min(state.overlay_index + 1, len(state.overlays))}/{len(state.overlays)}",
                **(data or {}),
            },
        )

    def _wait_agent(self, state: PipelineState, message: str, description: str, instruction: str = "", data=None) -> StepResult:
        state.status = "waiting_agent"
        return self._result(state, "waiting_agent", message, NextAction(
            control="agent", description=description, instruction=instruction,
        ), data)

    def _wait_user(self, state: PipelineState, message: str, description: str, instruction: str = "", data=None) -> StepResult:
        state.status = "waiting_user"
        return self._result(state, "waiting_user", message, NextAction(
            control="user", description=description, instruction=instruction,
        ), data)

    def _terminal_result(self, state: PipelineState) -> StepResult:
        if state.status == "completed":
            return self._result(state, "completed", "Pipeline complete.", NextAction(
                control="user",
                description="Pipeline complete. Start a new cycle when ready.",
                instruction=f"refinery refine {state.target}",
            ))
        return self._result(state, state.status, state.error or f"Pipeline {state.status}.", NextAction(
            control="user",
            description=(
                "Pipeline stopped. Start a new pipeline, or fix the issue and start again."
                if state.status == "error" else "Pipeline was cancelled."
            ),
            instruction=f"refinery refine {state.target}",
        ))

    def _complete(self, state: PipelineState, message: str, extra: dict[str, Any] | None = None) -> StepResult:
        state.status = "completed"
        state.log("status", "completed")
        self._record_feedback(state)
        logger.info(f"[PIPELINE] {state.pipeline_id} completed: {message}")
        return self._result(state, "completed", message, NextAction(
            control="user",
            description="Pipeline complete. Feedback recorded for future research.",
            instruction=f"Command: {state.command} | Overlays: {' → '.join(state.overlays)}",
        ), extra)

    # -- context ------------------------------------------------------------

    def _inject_self_context(self, inputs: PipelineInputs) -> None:
        source = self.config.source_path
        inputs.name = "REFINERY"
        inputs.repo_url = inputs.repo_url or f"file://{source}"
        if not inputs.tools:
            inputs.tools = list(SELF_TOOLS)
        note = (
            "SELF-IMPROVEMENT MODE: the target is this engine's own codebase. "
            f"Source path: {source}. Apply the same alignment gates and cleanup passes."
        )
        inputs.context = f"{note}\n\n{inputs.context}" if inputs.context else note

    def _ensure_target(self, target: str) -> None:
        if self.db.get_target(target):
            return
        d = self.config.defaults
        self.db.upsert_target(TargetConfig(
            target=target,
            autonomy_level=d.autonomy_level,
            change_budget_per_window=d.change_budget_per_window,
            window_hours=d.window_hours,
            max_loc_per_pr=d.max_loc_per_pr,
            scorecard_weights=dict(self.config.triage.scorecard_weights),
        ))
        logger.debug(f"[PIPELINE] Registered target {target} with defaults")

    def _pipeline_consensus(self, state: PipelineState) -> ConsensusResult | None:
        if "research" in state.payloads:
            consensus_id = state.payload("research").consensus_id
            if consensus_id:
                return self.db.get_consensus(consensus_id)
        return self.db.latest_consensus(state.target)

    # -- overlays -----------------------------------------------------------

    def _research(self, state: PipelineState, agent_input: dict[str, Any]) -> StepResult | None:
        payload = state.payload("research")
        content = state.inputs.research_content

        if not payload.prompts:
            perspectives = research_perspectives(state.command, bool(content))
            lessons = [lesson for fb in self.db.feedback(state.target) for lesson in fb.lessons]
            query = ResearchQuery(
                target=state.target,
                name=state.inputs.name,
                description=state.inputs.description,
                tools=state.inputs.tools,
                focus_areas=perspectives,
                additional_context=state.inputs.context,
                lessons=lessons,
            )
            prompts = self.research.start(query, perspectives)
            payload.external_content = bool(content)
            payload.prompts = [PerspectivePrompt(perspective=p.perspective, prompt=p.prompt,
                                                 prompt_hash=p.prompt_hash) for p in prompts]
            return self._ask_for_perspective(state, payload)

        findings = agent_input.get("findings")
        if findings is None:
            if payload.next_prompt is None:
                return self._finish_research(state, payload)
            diagnosis = "no findings submitted; pass a findings list with the next call"
            return self._wait_agent(
                state,
                f"Waiting for research findings. Diagnosis: {diagnosis}.",
                "Submit findings for the current perspective, or force-advance to skip research.",
                (f"Required perspectives: {', '.join(payload.perspectives)} "
                 f"({payload.perspectives_done}/{len(payload.prompts)} done)"),
                {"next_perspective": payload.next_prompt.perspective},
            )

        current = payload.next_prompt
        if current is not None:
            feed = self.research.store(
                state.target, current.perspective, current.prompt_hash,
                normalize_findings(findings), pipeline_id=state.pipeline_id,
            )
            payload.feed_ids.append(feed.feed_id)
            payload.perspectives_done += 1

        if payload.next_prompt is not None:
            return self._ask_for_perspective(state, payload)
        return self._finish_research(state, payload)

    def _ask_for_perspective(self, state: PipelineState, payload) -> StepResult:
        current = payload.next_prompt
        done, total = payload.perspectives_done, len(payload.prompts)
        instruction = current.prompt
        if payload.external_content:
            content = state.inputs.research_content
            preview = content[:CONTENT_PREVIEW_CHARS]
            if len(content) > CONTENT_PREVIEW_CHARS:
                preview += "\n...(truncated)..."
            instruction = f"{instruction}\n\n--- RESEARCH CONTENT ---\n{preview}\n--- END ---"
        return self._wait_agent(
            state,
            f'{done}/{total} perspectives complete. Next: "{current.perspective}"',
            f'Analyze the "{current.perspective}" perspective, then call next with your findings.',
            instruction,
            {"perspective": current.perspective, "prompt_hash": current.prompt_hash},
        )

    def _finish_research(self, state: PipelineState, payload) -> None:
        result = self.consensus.compute(state.target, feed_ids=payload.feed_ids, pipeline_id=state.pipeline_id)
        payload.consensus_id = result.consensus_id
        payload.findings_count = len(result.findings)
        payload.agreement = result.overall_agreement
        return None

    def _classify(self, state: PipelineState, agent_input: dict[str, Any]) -> None:
        payload = state.payload("classify")
        multi = bool(state.classification and state.classification.requires_multi_model)
        payload.requires_multi_model = multi

        before = list(state.overlays)
        planned = build_overlay_plan(state.command, bool(state.inputs.research_content), multi)
        prefix = before[:state.overlay_index + 1]
        if planned[:len(prefix)] == prefix:
            after = planned
        elif multi and "deliberate" not in before[state.overlay_index + 1:]:
            after = prefix + ["deliberate"] + before[state.overlay_index + 1:]
        else:
            after = before

        if after != before:
            payload.inserted = [o for o in after if o not in before]
            state.overlays = after
            state.log("insert", f"inserted {', '.join(payload.inserted)}", overlays=list(after))
            logger.info(f"[PIPELINE] {state.pipeline_id}: plan is now {' → '.join(after)}")
        return None

    def _deliberate(self, state: PipelineState, agent_input: dict[str, Any]) -> StepResult | None:
        overlay = state.current_overlay
        payload = state.payload(overlay)

        if state.step_within_overlay == 0:
            problem = f"Review improvement proposals for {state.target}: {state.intent}"
            research = state.payloads.get("research")
            agreement = getattr(research, "agreement", None)
            context = f"{state.inputs.context} | Consensus agreement: {agreement if agreement is not None else 'pending'}"
            instruction = f"problem: {problem}\ncontext: {context}"
            if self.deliberation is not None and payload.session_id is None:
                session = self.deliberation.start(problem, context, pipeline_id=state.pipeline_id)
                payload.session_id = session.session_id
                pending = ", ".join(p.model for p in session.pending) or "none"
                instruction += f"\nsession: {session.session_id} (pending sources: {pending})"
            return self._wait_agent(
                state,
                f"Multi-source deliberation for this {state.classification.complexity if state.classification else 'complex'} task.",
                "Deliberate on the problem, then call next with the session id or your notes.",
                instruction,
                {"session_id": payload.session_id},
            )

        payload.session_id = agent_input.get("session_id") or payload.session_id
        payload.notes = agent_input.get("notes", payload.notes)
        return None

    def _triage(self, state: PipelineState, agent_input: dict[str, Any]) -> StepResult | None:
        payload = state.payload("triage")

        if payload.consensus_id is None:
            consensus = self._pipeline_consensus(state)
            if consensus is None:
                logger.info(f"[PIPELINE] {state.pipeline_id}: no consensus, skipping triage")
                return None

            result = self.triage.triage(consensus, pipeline_id=state.pipeline_id)
            actionable = result.actionable
            payload.consensus_id = consensus.consensus_id
            payload.proposal_ids = [t.proposal.proposal_id for t in result.proposals]
            payload.actionable_ids = [t.proposal.proposal_id for t in actionable]
            payload.escalations = [e.message for e in result.escalations]
            payload.budget_remaining = result.budget_remaining

            if not actionable:
                return self._complete(state, "No actionable proposals.", {
                    "escalations": payload.escalations,
                })
            payload.top_proposal_id = actionable[0].proposal.proposal_id
            state.step_within_overlay = 0

        if state.step_within_overlay > 0 and self.db.has_approval("proposal", payload.top_proposal_id):
            self.db.update_proposal_status(payload.top_proposal_id, "approved", actor="user")
            payload.approved = True
            self.bus.emit("proposal.approved", "user", {
                "proposal_id": payload.top_proposal_id, "pipeline_id": state.pipeline_id,
            })
            return None

        lines = []
        for i, proposal_id in enumerate(payload.actionable_ids[:3], start=1):
            proposal = self.db.get_proposal(proposal_id)
            if proposal:
                lines.append(f"{i}. [{proposal.priority}] {proposal_id}: {proposal.title}")
        return self._wait_user(
            state,
            f"{len(payload.actionable_ids)} actionable proposal(s). Top priority needs approval.",
            "Review the proposals and approve the top one to continue.",
            "\n".join(lines) + (
                f"\n\nrefinery approve proposal {payload.top_proposal_id} --by <name>"
                f"\nrefinery next {state.pipeline_id}"
            ),
            {"top_proposal_id": payload.top_proposal_id, "escalations": payload.escalations,
             "budget_remaining": payload.budget_remaining},
        )

    def _align(self, state: PipelineState, agent_input: dict[str, Any]) -> StepResult | None:
        payload = state.payload("align")

        if state.step_within_overlay >= 1:
            if self.db.has_approval("pipeline", state.pipeline_id):
                logger.info(f"[PIPELINE] {state.pipeline_id}: alignment approved")
                return None
            state.step_within_overlay = 0

        summary = [f"## Alignment Check: {state.target}", "", f"**Intent**: {state.intent}"]
        summary.append(f"**Command**: {state.command} | **Remaining**: {' → '.join(state.remaining_overlays) or 'none'}")
        triage = state.payloads.get("triage")
        if triage is not None and triage.actionable_ids:
            summary.append("")
            summary.append(f"### Proposed Changes ({len(triage.actionable_ids)})")
            for proposal_id in triage.actionable_ids[:5]:
                proposal = self.db.get_proposal(proposal_id)
                if proposal:
                    summary.append(f"- **{proposal_id}**: {proposal.title} [priority: {proposal.priority}]")
        payload.summary = "\n".join(summary)
        payload.requests += 1

        self.governance.escalate(
            "Alignment gate: confirm direction before changes proceed",
            "pipeline", state.pipeline_id, triggers=["align"],
        )
        return self._wait_user(
            state,
            "Alignment gate: waiting for user confirmation before proceeding.",
            "Review the proposed direction and approve to continue.",
            f"{payload.summary}\n\nrefinery approve pipeline {state.pipeline_id} --by <name>\nrefinery next {state.pipeline_id}",
            {"alignment_summary": payload.summary},
        )

    def _stage(self, state: PipelineState, agent_input: dict[str, Any]) -> StepResult | None:
        overlay = state.current_overlay
        payload = state.payload(overlay)

        if state.step_within_overlay == 0:
            instruction = f"Complete the {overlay} step for {state.target}, then call next with notes."
            if overlay == "plan":
                approved = self.db.list_proposals(state.target, status=["approved", "triaged"])
                ids = [p.proposal_id for p in approved[:3]]
                instruction = f"Build a delivery plan for proposals {ids}, then call next with notes."
            return self._wait_agent(
                state,
                f"{OVERLAY_LABELS[overlay]}: waiting for the agent.",
                f'Agent should complete the "{overlay}" step, then call next.',
                instruction,
            )

        payload.completed = True
        payload.notes = agent_input.get("notes", "")
        if overlay == "cleanup":
            self.audit.record("pipeline.cleanup", "orchestrator", "pipeline", state.pipeline_id, {
                "overlay": overlay, "passed": True,
            }, correlation_id=state.pipeline_id)
        elif overlay == "document":
            self.audit.record("pipeline.documentation", "orchestrator", "pipeline", state.pipeline_id, {
                "overlay": overlay, "passed": True,
            }, correlation_id=state.pipeline_id)
        return None

    def _release(self, state: PipelineState, agent_input: dict[str, Any]) -> StepResult | None:
        payload = state.payload("release")
        if state.step_within_overlay == 0:
            return self._wait_user(
                state,
                "Release ready for approval.",
                "Approve and publish the release, then call next.",
                f"refinery next {state.pipeline_id}",
            )
        payload.completed = True
        payload.notes = agent_input.get("notes", "")
        return None

    def _propagate(self, state: PipelineState, agent_input: dict[str, Any]) -> StepResult | None:
        payload = state.payload("propagate")
        if state.step_within_overlay >= 1:
            return None

        others = [t.target for t in self.db.list_targets() if t.target not in (state.target, SELF_TARGET)]
        consensus = self._pipeline_consensus(state)
        universal = [
            f for f in (consensus.findings if consensus else [])
            if f.agreement_score >= UNIVERSAL_AGREEMENT
            and len(f.supporting_perspectives) >= 2
            and f.risk_level != "low"
        ]

        if not others:
            payload.skipped = "no other targets registered"
        elif not universal:
            payload.skipped = "no universal findings to propagate"
        if payload.skipped:
            logger.info(f"[PIPELINE] {state.pipeline_id}: propagation skipped, {payload.skipped}")
            return None

        payload.universal_claims = [f.claim for f in universal]
        payload.other_targets = others
        lines = [f"- {f.claim} [{f.risk_level}]: {f.recommendation}" for f in universal[:5]]
        return self._wait_user(
            state,
            f"{len(universal)} improvement(s) may apply to {len(others)} other target(s).",
            "Review universal improvements for propagation, then call next.",
            "\n".join(lines) + f"\n\nOther targets: {', '.join(others)}",
            {"universal_findings": len(universal), "other_targets": others},
        )

    # -- feedback -----------------------------------------------------------

    def _record_feedback(self, state: PipelineState) -> FeedbackEntry:
        strengths: list[str] = []
        weaknesses: list[str] = []
        lessons: list[str] = []

        research = state.payloads.get("research")
        if research is not None and research.prompts:
            done, total = research.perspectives_done, len(research.prompts)
            if done == total:
                strengths.append(f"Research completed across all {total} perspectives")
            else:
                weaknesses.append(f"Research incomplete: {done}/{total} perspectives analyzed")
                lessons.append("Force-advance sparingly: skipped perspectives leave gaps")
            if research.agreement is not None:
                if research.agreement >= 0.7:
                    strengths.append(f"High cross-perspective agreement ({research.agreement:.0%})")
                elif research.agreement < 0.4:
                    weaknesses.append(f"Low cross-perspective agreement ({research.agreement:.0%})")
                    lessons.append("Low agreement suggests research prompts need more focus or context")

        triage = state.payloads.get("triage")
        if triage is not None:
            if triage.actionable_ids:
                strengths.append(f"{len(triage.actionable_ids)} actionable proposal(s) generated from research")
            else:
                weaknesses.append("No actionable proposals: research may have been too generic")

        for overlay, note in (("cleanup", "Cleanup verification pass completed"),
                              ("document", "Documentation updated alongside code changes")):
            payload = state.payloads.get(overlay)
            if payload is not None and payload.completed:
                strengths.append(note)

        if any(t.kind == "skip" for t in state.transitions):
            lessons.append("Overlays were force-skipped in this run")
        if not strengths:
            strengths.append("Pipeline completed")

        entry = FeedbackEntry(
            target=state.target,
            pipeline_id=state.pipeline_id,
            command=state.command,
            strengths=strengths,
            weaknesses=weaknesses,
            lessons=lessons,
        )
        self.db.insert_feedback(entry)
        self.audit.record("pipeline.feedback", "orchestrator", "pipeline", state.pipeline_id, {
            "feedback_id": entry.feedback_id,
            "strengths": len(strengths),
            "weaknesses": len(weaknesses),
            "lessons": len(lessons),
        }, correlation_id=state.pipeline_id)
        return entry
