import json
from types import SimpleNamespace

import pytest

from refinery.routing import DeliberationEngine, analyze_agreement
from refinery.routing.deliberation import DeliberationResponse, parse_structured
from refinery.storage import RecordNotFoundError

MODELS = ["anthropic/model-a", "gemini/model-b"]

ANSWER = json.dumps({
    "confidence": 0.8,
    "key_points": ["Keep the synchronous client for now", "Add connection pooling first"],
    "risks": ["Pool exhaustion under burst load"],
    "recommendation": "Pool first, revisit async later",
    "reasoning": "Pooling removes most of the latency without a rewrite",
})


class FakeRouter:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def can_call(self, model):
        return True

    def complete(self, model, messages, temperature, max_tokens):
        self.calls.append(model)
        if model in self.failing:
            raise RuntimeError("provider unavailable")
        return SimpleNamespace(content=ANSWER, latency_ms=12)


def test_failed_source_becomes_pending_prompt(config, db, audit):
    engine = DeliberationEngine(config, db, audit, FakeRouter(failing={MODELS[1]}))

    session = engine.start("Should the client go async?", models=MODELS)

    assert [r.model for r in session.responses] == [MODELS[0]]
    assert [p.model for p in session.pending] == [MODELS[1]]
    assert "provider unavailable" in session.pending[0].reason
    assert session.resolution == "pending"
    assert session.analysis is None

    finished = engine.submit(session.session_id, MODELS[1], ANSWER)

    assert finished.pending == []
    assert [r.model for r in finished.responses] == MODELS
    assert finished.responses[1].source == "manual"
    assert finished.resolution == "consensus"
    assert finished.analysis.agreed_points


def test_prompt_mode_skips_the_router(config, db, audit):
    router = FakeRouter()
    session = DeliberationEngine(config, db, audit, router).start("x", models=MODELS, force_prompt_mode=True)
    assert router.calls == []
    assert [p.model for p in session.pending] == MODELS


def test_resolve_records_user_decision(config, db, audit):
    engine = DeliberationEngine(config, db, audit)
    session = engine.start("Pick a queue", models=MODELS)

    resolved = engine.resolve(session.session_id, "Use the managed queue", chosen_position=MODELS[0])

    assert resolved.resolution == "user_decision"
    assert engine.get(session.session_id).final_recommendation == "Use the managed queue"


def test_unknown_session(config, db, audit):
    with pytest.raises(RecordNotFoundError):
        DeliberationEngine(config, db, audit).get("delib-missing")


def test_divergent_confidence_needs_user():
    a = DeliberationResponse(model="a", text="Go async now", confidence=0.9, key_points=["Go async"])
    b = DeliberationResponse(model="b", text="Stay synchronous and pool", confidence=0.4, key_points=["Stay sync"])

    analysis = analyze_agreement([a, b])

    assert analysis.needs_user_decision
    assert {c.topic for c in analysis.conflicts} >= {"Confidence divergence", "Fundamental approach disagreement"}


def test_single_response_is_full_agreement():
    only = DeliberationResponse(model="a", text="fine", key_points=["fine"])
    assert analyze_agreement([only]).overall_agreement == 1.0


def test_parse_structured_tolerates_prose():
    assert parse_structured('Here you go: {"confidence": 0.6} thanks')["confidence"] == 0.6
    assert parse_structured("no json here") == {}
    assert parse_structured("{broken") == {}


class ScriptedRouter(FakeRouter):
    def __init__(self, answers):
        super().__init__()
        self.answers = answers

    def complete(self, model, messages, temperature, max_tokens):
        self.calls.append(model)
        return SimpleNamespace(content=self.answers[model], latency_ms=5)


def test_unparseable_answer_degrades_only_that_source(config, db, audit):
    router = ScriptedRouter({
        MODELS[0]: ANSWER,
        MODELS[1]: json.dumps({"confidence": "high", "key_points": ["Go async"], "risks": []}),
    })
    engine = DeliberationEngine(config, db, audit, router)

    session = engine.start("Should the client go async?", models=MODELS)

    assert [r.model for r in session.responses] == [MODELS[0]]
    assert [p.model for p in session.pending] == [MODELS[1]]
    assert "Could not parse answer" in session.pending[0].reason
    assert engine.get(session.session_id).pending[0].model == MODELS[1]


def test_answer_fields_are_sanitised(config, db, audit):
    router = ScriptedRouter({
        MODELS[0]: json.dumps({"confidence": 1.7, "key_points": "pool first", "risks": ["Pool exhaustion", 3, None]}),
        MODELS[1]: json.dumps({"confidence": -0.2, "key_points": ["Pool first"]}),
    })
    session = DeliberationEngine(config, db, audit, router).start("q", models=MODELS)

    first, second = session.responses
    assert first.confidence == 1.0
    assert first.key_points == []
    assert first.risks == ["Pool exhaustion", "3"]
    assert second.confidence == 0.0


def test_duplicate_models_are_asked_once(config, db, audit):
    router = FakeRouter()
    session = DeliberationEngine(config, db, audit, router).start("q", models=[MODELS[0], MODELS[0]])

    assert session.models_assigned == [MODELS[0]]
    assert router.calls == [MODELS[0]]
    assert session.resolution == "consensus"


def test_risk_flagged_by_every_response_of_one_model():
    a = DeliberationResponse(model="a", text="Pool first", risks=["Pool exhaustion under burst load"])
    b = DeliberationResponse(model="a", text="Pool first", risks=["Unrelated timeout budget"])

    analysis = analyze_agreement([a, b])

    minor = [c for c in analysis.conflicts if c.severity == "minor"]
    assert minor and minor[0].positions[1]["model"] == "other sources"


def test_submit_rejects_unassigned_model(config, db, audit):
    engine = DeliberationEngine(config, db, audit)
    session = engine.start("Pick a queue", models=MODELS)

    with pytest.raises(RecordNotFoundError, match="assigned models"):
        engine.submit(session.session_id, "openai/stranger", ANSWER)

    unchanged = engine.get(session.session_id)
    assert unchanged.responses == []
    assert [p.model for p in unchanged.pending] == MODELS
