"""
REFINERY Research Ingestion

The engine never researches anything itself. It hands the calling
agent one prompt per perspective and stores whatever findings come
back, scored by how well they are evidenced.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from loguru import logger
from pydantic import BaseModel, Field

from refinery.audit_logger import AuditLog
from refinery.models import Finding, ResearchFeedEntry
from refinery.storage import Database

PERSPECTIVE_FOCUS: dict[str, str] = {
    "security": "authentication, authorization, input validation, secret handling, dependency vulnerabilities",
    "reliability": "error handling, graceful degradation, retries, timeouts, connection lifecycle",
    "compliance": "protocol conformance, schema quality, naming and structured output",
    "devex": "API ergonomics, documentation, onboarding friction, error messages, type safety",
    "performance": "latency, memory, pooling, batching, caching",
    "general": "a balanced review across every other perspective",
}

FINDINGS_SHAPE = (
    '{"findings": [{"claim": "...", "recommendation": "...", '
    '"expected_impact": {"reliability": 0.0, "security": 0.0, "devex": 0.0, "performance": 0.0}, '
    '"risk": {"level": "low|medium|high|critical", "notes": "..."}, '
    '"evidence": [{"type": "url|quote|spec_reference", "value": "...", "quality": "A|B|C"}]}]}'
)


class ResearchQuery(BaseModel):
    target: str
    name: str = ""
    description: str = ""
    tools: list[str] = Field(default_factory=list)
    focus_areas: list[str] = Field(default_factory=list)
    additional_context: str = ""
    lessons: list[str] = Field(default_factory=list)


@dataclass
class ResearchPrompt:
    perspective: str
    prompt: str
    prompt_hash: str


def feed_confidence(findings: list[Finding]) -> float:
    if not findings:
        return 0.1
    score = 0.3
    total_evidence = sum(len(f.evidence) for f in findings)
    score += min(total_evidence / len(findings) * 0.1, 0.3)
    a_quality = sum(1 for f in findings for e in f.evidence if e.quality == "A")
    score += min(a_quality * 0.05, 0.2)
    if any(e.type == "spec_reference" for f in findings for e in f.evidence):
        score += 0.1
    return min(score, 1.0)


def build_research_prompt(query: ResearchQuery, perspective: str) -> str:
    lines = [
        f"Analyze {query.name or query.target} (id: {query.target}) from a {perspective} perspective.",
        f"Focus on: {PERSPECTIVE_FOCUS.get(perspective, PERSPECTIVE_FOCUS['general'])}.",
    ]
    if query.description:
        lines.append(f"Description: {query.description}")
    if query.tools:
        lines.append(f"Tools: {', '.join(query.tools)}")
    if query.focus_areas:
        lines.append(f"Also consider: {', '.join(query.focus_areas)}")
    if query.additional_context:
        lines.append(f"Context: {query.additional_context}")
    if query.lessons:
        lines.append("Lessons from earlier runs:")
        lines.extend(f"- {lesson}" for lesson in query.lessons)
    lines.append("Impact scores run from -1.0 (harmful) to +1.0 (beneficial).")
    lines.append(f"Return ONLY JSON shaped like: {FINDINGS_SHAPE}")
    return "\n".join(lines)


def hash_prompt(prompt: str) -> str:
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()


class ResearchService:
    def __init__(self, db: Database, audit: AuditLog):
        self.db = db
        self.audit = audit

    def start(self, query: ResearchQuery, perspectives: list[str] | None = None) -> list[ResearchPrompt]:
        perspectives = perspectives or ["general"]
        prompts = []
        for perspective in perspectives:
            prompt = build_research_prompt(query, perspective)
            prompts.append(ResearchPrompt(perspective, prompt, hash_prompt(prompt)))

        self.audit.record("research.start", "system", "target", query.target, {
            "perspectives": perspectives,
        })
        logger.info(f"[RESEARCH] {len(prompts)} prompt(s) issued for {query.target}")
        return prompts

    def store(
        self,
        target: str,
        perspective: str,
        prompt_hash: str,
        findings: list[Finding],
        pipeline_id: str | None = None,
    ) -> ResearchFeedEntry:
        entry = ResearchFeedEntry(
            target=target,
            perspective=perspective,
            prompt_hash=prompt_hash,
            findings=findings,
            confidence=feed_confidence(findings),
            pipeline_id=pipeline_id,
        )
        self.db.insert_feed(entry)

        for i, finding in enumerate(findings):
            self.db.vectors.index(
                f"{entry.feed_id}-{i}",
                "findings",
                f"{finding.claim} {finding.recommendation}",
                {"feed_id": entry.feed_id, "perspective": perspective,
                 "risk_level": finding.risk.level, "target": target},
            )

        self.audit.record("research.store", "agent", "research_feed", entry.feed_id, {
            "perspective": perspective,
            "findings_count": len(findings),
            "confidence": entry.confidence,
        }, correlation_id=pipeline_id)
        logger.info(
            f"[RESEARCH] Stored {len(findings)} {perspective} finding(s) for {target} "
            f"(confidence {entry.confidence:.2f})"
        )
        return entry
