"""
REFINERY Deliberation — two sources, one problem.

The only truly concurrent part of the engine. Every source with
credentials is queried at the same time; the engine waits for all of
them. A source that fails, or has no credentials, becomes a pending
prompt the calling agent can answer by hand through `submit()`.
There is no engine-level timeout: a hung call stalls only its own
session.
"""

from __future__ import annotations

import concurrent.futures
import json
import re
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field

from refinery.audit_logger import AuditLog
from refinery.config_loader import RefineryConfig
from refinery.models import new_id, now_iso
from refinery.similarity import ngram_jaccard
from refinery.storage import Database, RecordNotFoundError

POINT_THRESHOLD = 0.4
RISK_THRESHOLD = 0.3
CONFIDENCE_DIVERGENCE = 0.3
FUNDAMENTAL_SIMILARITY = 0.15
DEFAULT_CONFIDENCE = 0.7

SYSTEM_PROMPT = """You are a senior software architect conducting a critical review.
Answer with JSON:
{"confidence": 0.0-1.0, "key_points": ["..."], "risks": ["..."],
 "recommendation": "...", "reasoning": "..."}
Be specific and opinionated. Flag real risks."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class DeliberationResponse(BaseModel):
    model: str
    text: str
    confidence: float = DEFAULT_CONFIDENCE
    key_points: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    source: Literal["api", "manual"] = "api"
    latency_ms: int = 0
    created_at: str = Field(default_factory=now_iso)


class PendingPrompt(BaseModel):
    model: str
    prompt: str
    reason: str = ""


class ConflictPoint(BaseModel):
    topic: str
    severity: Literal["minor", "significant", "fundamental"]
    requires_user_decision: bool
    positions: list[dict[str, str]] = Field(default_factory=list)


class AgreementAnalysis(BaseModel):
    overall_agreement: float = 0.0
    agreed_points: list[str] = Field(default_factory=list)
    conflicts: list[ConflictPoint] = Field(default_factory=list)
    unique_insights: list[dict[str, str]] = Field(default_factory=list)
    synthesis: str = ""

    @property
    def needs_user_decision(self) -> bool:
        return any(c.requires_user_decision for c in self.conflicts)


class DeliberationSession(BaseModel):
    session_id: str = Field(default_factory=lambda: new_id("delib"))
    problem: str
    context: str = ""
    models_assigned: list[str]
    responses: list[DeliberationResponse] = Field(default_factory=list)
    pending: list[PendingPrompt] = Field(default_factory=list)
    analysis: AgreementAnalysis | None = None
    resolution: Literal["pending", "consensus", "user_decision"] = "pending"
    final_recommendation: str | None = None
    pipeline_id: str | None = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


# ---------------------------------------------------------------------------
# Agreement analysis
# ---------------------------------------------------------------------------

def _cluster(texts: list[str], threshold: float) -> list[list[int]]:
    clusters: list[list[int]] = []
    used: set[int] = set()
    for i in range(len(texts)):
        if i in used:
            continue
        cluster = [i]
        used.add(i)
        for j in range(i + 1, len(texts)):
            if j not in used and ngram_jaccard(texts[i], texts[j], 3) >= threshold:
                cluster.append(j)
                used.add(j)
        clusters.append(cluster)
    return clusters


def analyze_agreement(responses: list[DeliberationResponse]) -> AgreementAnalysis:
    if len(responses) < 2:
        only = responses[0] if responses else None
        return AgreementAnalysis(
            overall_agreement=1.0,
            agreed_points=only.key_points if only else [],
            synthesis=only.text if only else "",
        )

    points = [(r.model, p) for r in responses for p in r.key_points]
    risks = [(r.model, k) for r in responses for k in r.risks]
    agreed: list[str] = []
    unique: list[dict[str, str]] = []
    conflicts: list[ConflictPoint] = []

    for cluster in _cluster([p for _, p in points], POINT_THRESHOLD):
        sources = {points[i][0] for i in cluster}
        if len(sources) >= 2:
            agreed.append(points[cluster[0]][1])
        else:
            unique.append({"model": points[cluster[0]][0], "insight": points[cluster[0]][1]})

    for cluster in _cluster([k for _, k in risks], RISK_THRESHOLD):
        sources = {risks[i][0] for i in cluster}
        if len(sources) == 1:
            flagged_by, risk = risks[cluster[0]]
            other = next((r.model for r in responses if r.model != flagged_by), "other sources")
            conflicts.append(ConflictPoint(
                topic=risk, severity="minor", requires_user_decision=False,
                positions=[
                    {"model": flagged_by, "position": "Identified as risk"},
                    {"model": other, "position": "Not flagged as risk"},
                ],
            ))

    first, second = responses[0], responses[1]
    if abs(first.confidence - second.confidence) > CONFIDENCE_DIVERGENCE:
        conflicts.append(ConflictPoint(
            topic="Confidence divergence", severity="significant", requires_user_decision=True,
            positions=[{"model": r.model, "position": f"Confidence: {r.confidence * 100:.0f}%"} for r in responses],
        ))
    if ngram_jaccard(first.text.lower(), second.text.lower(), 4) < FUNDAMENTAL_SIMILARITY:
        conflicts.append(ConflictPoint(
            topic="Fundamental approach disagreement", severity="fundamental", requires_user_decision=True,
            positions=[
                {"model": r.model, "position": "; ".join(r.key_points[:3]) or "See full response"}
                for r in responses
            ],
        ))

    overall = min(1.0, 2 * len(agreed) / len(points)) if points else 0.0
    return AgreementAnalysis(
        overall_agreement=overall,
        agreed_points=agreed,
        conflicts=conflicts,
        unique_insights=unique,
        synthesis=_synthesis(agreed, conflicts, unique, responses),
    )


def _synthesis(
    agreed: list[str],
    conflicts: list[ConflictPoint],
    unique: list[dict[str, str]],
    responses: list[DeliberationResponse],
) -> str:
    parts = []
    if agreed:
        parts.append(f"Agreed ({len(agreed)}): {'; '.join(agreed)}")
    if conflicts:
        fundamental = sum(1 for c in conflicts if c.severity == "fundamental")
        parts.append(f"Conflicts ({len(conflicts)}, {fundamental} fundamental): {'; '.join(c.topic for c in conflicts)}")
    if unique:
        insights = "; ".join(f"[{u['model']}] {u['insight']}" for u in unique)
        parts.append(f"Unique insights ({len(unique)}): {insights}")
    parts.append("Models: " + ", ".join(f"{r.model} ({r.confidence * 100:.0f}% confidence)" for r in responses))
    return "\n".join(parts)


def _confidence(value: Any) -> float:
    """Numeric confidence clamped to [0, 1]; anything else is a malformed answer."""
    if value is None:
        return DEFAULT_CONFIDENCE
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"confidence must be a number, got {value!r}")
    confidence = float(value)
    if confidence != confidence:
        raise ValueError("confidence must be a number, got NaN")
    return min(1.0, max(0.0, confidence))


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def parse_structured(text: str) -> dict[str, Any]:
    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        return {}
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def build_prompt(problem: str, context: str) -> str:
    return (
        f"## Critical Review Request\n\n### Problem\n{problem}\n\n### Context\n{context or 'None.'}\n\n"
        "Consider architecture implications, security risks, performance impact, "
        "maintenance burden and alternatives. Answer in the JSON format from the system prompt."
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DeliberationEngine:
    def __init__(self, config: RefineryConfig, db: Database, audit: AuditLog, router=None):
        self.config = config
        self.db = db
        self.audit = audit
        self.router = router

    def _response(self, model: str, text: str, source: str, latency_ms: int = 0, **overrides) -> DeliberationResponse:
        parsed = parse_structured(text)
        confidence = overrides.get("confidence")
        key_points = overrides.get("key_points")
        risks = overrides.get("risks")
        return DeliberationResponse(
            model=model,
            text=text,
            confidence=_confidence(confidence if confidence is not None else parsed.get("confidence")),
            key_points=_string_list(key_points if key_points is not None else parsed.get("key_points")),
            risks=_string_list(risks if risks is not None else parsed.get("risks")),
            source=source,
            latency_ms=latency_ms,
        )

    def _conclude(self, session: DeliberationSession) -> None:
        if len(session.responses) < len(session.models_assigned):
            return
        order = {m: i for i, m in enumerate(session.models_assigned)}
        session.responses.sort(key=lambda r: order.get(r.model, len(order)))
        session.analysis = analyze_agreement(session.responses)
        session.resolution = "pending" if session.analysis.needs_user_decision else "consensus"

    def start(
        self,
        problem: str,
        context: str = "",
        models: list[str] | None = None,
        force_prompt_mode: bool = False,
        pipeline_id: str | None = None,
    ) -> DeliberationSession:
        routing = self.config.routing
        models = models or (list(routing.architect_pair[:2]) if len(routing.architect_pair) >= 2 else [routing.architect])
        models = list(dict.fromkeys(models))
        session = DeliberationSession(problem=problem, context=context, models_assigned=models, pipeline_id=pipeline_id)
        prompt = build_prompt(problem, context)
        messages = [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": prompt}]

        callable_models = []
        for model in models:
            if force_prompt_mode or self.router is None or not self.router.can_call(model):
                session.pending.append(PendingPrompt(model=model, prompt=prompt, reason="no direct access"))
            else:
                callable_models.append(model)

        if callable_models:
            cfg = self.config.deliberation
            with concurrent.futures.ThreadPoolExecutor(max_workers=cfg.max_workers) as executor:
                futures = {
                    executor.submit(self.router.complete, model, messages, cfg.temperature, cfg.max_tokens): model
                    for model in callable_models
                }
                for future in concurrent.futures.as_completed(futures):
                    model = futures[future]
                    try:
                        result = future.result()
                    except Exception as e:
                        logger.warning(f"[DELIBERATION] {model} failed, falling back to prompt mode: {e}")
                        session.pending.append(PendingPrompt(
                            model=model, prompt=prompt, reason=f"API call failed: {e}",
                        ))
                        continue
                    try:
                        response = self._response(model, result.content, "api", result.latency_ms)
                    except (TypeError, ValueError) as e:
                        logger.warning(f"[DELIBERATION] {model} answer unusable, falling back to prompt mode: {e}")
                        session.pending.append(PendingPrompt(
                            model=model, prompt=prompt, reason=f"Could not parse answer: {e}",
                        ))
                        continue
                    session.responses.append(response)

        session.pending.sort(key=lambda p: models.index(p.model))
        self._conclude(session)
        self.db["deliberations"].insert(session.model_dump())

        self.audit.record("deliberation.start", "deliberation_engine", "deliberation", session.session_id, {
            "models": models,
            "api_count": len(session.responses),
            "prompt_count": len(session.pending),
        }, correlation_id=pipeline_id)
        logger.info(
            f"[DELIBERATION] {session.session_id}: {len(session.responses)} answered, "
            f"{len(session.pending)} pending"
        )
        return session

    def _load(self, session_id: str) -> tuple[DeliberationSession, int]:
        record = self.db["deliberations"].get(session_id)
        if record is None:
            raise RecordNotFoundError("deliberations", session_id, "Start a deliberation first and use its session id.")
        return DeliberationSession(**record), record.get("version", 0)

    def get(self, session_id: str) -> DeliberationSession:
        return self._load(session_id)[0]

    def _save(self, session: DeliberationSession, version: int) -> None:
        session.updated_at = now_iso()
        self.db["deliberations"].replace(session.model_dump(), expected_version=version)

    def submit(
        self,
        session_id: str,
        model: str,
        text: str,
        confidence: float | None = None,
        key_points: list[str] | None = None,
        risks: list[str] | None = None,
    ) -> DeliberationSession:
        session, version = self._load(session_id)
        if model not in session.models_assigned:
            raise RecordNotFoundError(
                "deliberations", f"{session_id}/{model}",
                f"Submit for one of the assigned models: {', '.join(session.models_assigned)}.",
            )

        session.responses = [r for r in session.responses if r.model != model]
        session.responses.append(self._response(
            model, text, "manual", confidence=confidence, key_points=key_points, risks=risks,
        ))
        session.pending = [p for p in session.pending if p.model != model]
        self._conclude(session)
        self._save(session, version)

        self.db.vectors.index(f"{session_id}-{model}", "deliberations", text[:2000], {
            "session_id": session_id, "model": model,
        })
        self.audit.record("deliberation.submit", "agent", "deliberation", session_id, {
            "model": model, "resolution": session.resolution,
        }, correlation_id=session.pipeline_id)
        return session

    def resolve(self, session_id: str, resolution: str, chosen_position: str | None = None) -> DeliberationSession:
        session, version = self._load(session_id)
        session.resolution = "user_decision"
        session.final_recommendation = resolution
        self._save(session, version)

        self.audit.record("deliberation.resolve", "user", "deliberation", session_id, {
            "resolution": resolution, "chosen_position": chosen_position,
        }, correlation_id=session.pipeline_id)
        return session
