import pytest

from refinery.event_bus import EventBus
from refinery.governance import GovernanceGate
from refinery.orchestrator import (
    SELF_TOOLS,
    Orchestrator,
    PipelineNotFoundError,
    build_overlay_plan,
    classify_intent,
    normalize_target,
)
from refinery.storage import RecordNotFoundError


def _findings():
    return [{
        "claim": "Upstream calls fail without retries",
        "recommendation": "Wrap outbound calls in exponential backoff retries",
        "expected_impact": {"reliability": 0.6, "security": 0.0, "devex": 0.0, "performance": 0.1},
        "risk": {"level": "low", "notes": ""},
        "evidence": [{"type": "url", "value": "https://example.com/retries", "quality": "A"}],
    }]


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def orch(config, db, audit, bus):
    return Orchestrator(config, db=db, audit=audit, bus=bus)


def _approve(orch, target_type, target_id):
    GovernanceGate(orch.db, orch.audit).record_approval(target_type, target_id, "alice", True, True)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def test_intent_and_plan():
    assert classify_intent("improve error handling") == "improve"
    assert classify_intent("security review of auth") == "review"
    assert classify_intent("") == "refine"
    assert build_overlay_plan("assess") == ["research", "classify"]
    assert build_overlay_plan("assess", requires_multi_model=True) == ["research", "classify", "deliberate"]
    assert build_overlay_plan("consult", has_research_content=True)[0] == "research"


def test_self_aliases():
    assert normalize_target("MR") == "self"
    assert normalize_target(" Refinery ") == "self"
    assert normalize_target("svc-a") == "svc-a"


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------

def test_start_asks_for_first_perspective(orch):
    result = orch.start("svc", intent="improve reliability")

    assert result.status == "waiting_agent"
    assert result.overlay == "research"
    assert result.next.control == "agent"
    assert result.data["perspective"] == "security"
    assert "security perspective" in result.next.instruction

    state = orch.status(result.pipeline_id)
    assert state.command == "improve"
    assert state.version == 2
    assert orch.db.get_target("svc").autonomy_level == "pr_only"
    assert orch.active_pipeline("svc").pipeline_id == result.pipeline_id


def test_self_target_gets_self_context(orch):
    result = orch.start("MR", intent="assess")
    state = orch.status(result.pipeline_id)

    assert state.target == "self"
    assert state.inputs.name == "REFINERY"
    assert state.inputs.tools == SELF_TOOLS
    assert state.inputs.context.startswith("SELF-IMPROVEMENT MODE")


def test_findings_move_to_next_perspective(orch):
    pid = orch.start("svc", intent="improve").pipeline_id

    result = orch.advance(pid, {"findings": _findings()})

    assert result.status == "waiting_agent"
    assert result.data["perspective"] == "reliability"
    payload = orch.status(pid).payload("research")
    assert payload.perspectives_done == 1
    assert len(payload.feed_ids) == 1


def test_invalid_findings_leave_state_untouched(orch):
    pid = orch.start("svc", intent="improve").pipeline_id
    before = orch.status(pid)

    result = orch.advance(pid, {"findings": [{"claim": "no recommendation"}]})

    assert result.status == "waiting_agent"
    assert result.message.startswith("Findings rejected")
    assert "[0] missing recommendation" in result.next.instruction
    after = orch.status(pid)
    assert after.version == before.version
    assert after.payload("research").perspectives_done == 0
    assert orch.db.research_feeds("svc") == []


def test_alignment_gate_needs_pipeline_approval(orch):
    pid = orch.start("svc", intent="improve").pipeline_id

    gate = orch.advance(pid, force_advance=True)
    assert gate.overlay == "align"
    assert gate.status == "waiting_user"
    assert gate.next.control == "user"
    assert orch.status(pid).overlay_index == 2

    still = orch.advance(pid)
    assert still.overlay == "align"
    assert still.status == "waiting_user"
    assert orch.status(pid).step_within_overlay == 0

    _approve(orch, "pipeline", pid)
    moved = orch.advance(pid)
    assert moved.overlay == "plan"
    assert moved.status == "waiting_agent"
    assert orch.status(pid).overlay_index == 3


def test_overlay_index_never_goes_back(orch):
    pid = orch.start("svc", intent="improve").pipeline_id
    seen = [orch.status(pid).overlay_index]

    for _ in range(10):
        result = orch.advance(pid, force_advance=True)
        seen.append(orch.status(pid).overlay_index)
        if result.status == "completed":
            break

    assert seen == sorted(seen)
    assert result.status == "completed"
    assert seen[-1] == len(orch.status(pid).overlays)
    assert len(orch.db.feedback("svc")) == 1
    assert "Overlays were force-skipped in this run" in orch.db.feedback("svc")[0].lessons


def test_classify_inserts_deliberation(orch):
    pid = orch.start("svc", intent="assess the service", multi_model=True).pipeline_id

    result = orch.advance(pid, force_advance=True)

    state = orch.status(pid)
    assert state.overlays == ["research", "classify", "deliberate"]
    assert result.overlay == "deliberate"
    assert result.status == "waiting_agent"
    assert any(t.kind == "insert" for t in state.transitions)

    done = orch.advance(pid, {"notes": "Both sources agree"})
    assert done.status == "completed"
    assert orch.status(pid).payload("deliberate").notes == "Both sources agree"


def test_research_to_triage_to_approval(orch, bus):
    events = []
    bus.subscribe(lambda e: events.append(e.event_type))
    pid = orch.start("svc", intent="improve").pipeline_id

    for _ in range(5):
        result = orch.advance(pid, {"findings": _findings()})

    assert result.overlay == "triage"
    assert result.status == "waiting_user"
    state = orch.status(pid)
    research = state.payload("research")
    assert research.perspectives_done == 5
    assert research.agreement == pytest.approx(1.0)
    top = state.payload("triage").top_proposal_id
    assert top is not None
    assert "proposal.triaged" in events

    waiting = orch.advance(pid)
    assert waiting.overlay == "triage"
    assert waiting.status == "waiting_user"

    _approve(orch, "proposal", top)
    result = orch.advance(pid)

    assert result.overlay == "align"
    assert orch.db.get_proposal(top).status == "approved"
    assert "proposal.approved" in events


def test_cancelled_pipeline_is_frozen(orch):
    pid = orch.start("svc", intent="improve").pipeline_id

    cancelled = orch.cancel(pid, "wrong target")
    assert cancelled.status == "cancelled"
    version = orch.status(pid).version

    result = orch.advance(pid, {"findings": _findings()}, force_advance=True)
    assert result.status == "cancelled"
    assert orch.status(pid).version == version
    assert orch.cancel(pid).version == version
    assert orch.active_pipeline("svc") is None
    assert orch.audit.query(action="pipeline.cancel", target_id=pid)


def test_overlay_failure_marks_error(orch, monkeypatch):
    pid = orch.start("svc", intent="audit auth").pipeline_id

    def boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(orch.consensus, "compute", boom)
    orch.advance(pid, {"findings": _findings()})
    result = orch.advance(pid, {"findings": _findings()})

    assert result.status == "error"
    state = orch.status(pid)
    assert state.status == "error"
    assert "disk full" in state.error
    assert orch.audit.query(action="pipeline.error", target_id=pid)


def test_unknown_pipeline_has_suggestion(orch):
    with pytest.raises(PipelineNotFoundError) as exc:
        orch.advance("pipe-missing")

    assert isinstance(exc.value, RecordNotFoundError)
    assert "refinery status" in exc.value.suggestion


def test_purge_cancels_open_pipelines(orch):
    orch.start("svc", intent="improve")
    orch.start("other", intent="assess")

    result = orch.purge_stuck()

    assert result["purged"] == 2
    assert orch.active_pipeline() is None


def test_requirements_describe_the_wait(orch):
    pid = orch.start("svc", intent="improve").pipeline_id

    needs = orch.overlay_requirements(orch.status(pid))

    assert needs["waiting_for"] == "research_findings"
    assert needs["next_perspective"] == "security"
    assert needs["perspectives_total"] == 5
