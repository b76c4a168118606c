"""
REFINERY Scorecards — the objective function.

Five weighted dimensions; the three primary ones must never drop for
a change to count as an improvement.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger
from pydantic import BaseModel, Field

from refinery.audit_logger import AuditLog
from refinery.models import ScorecardDimension, ScorecardSnapshot, SubMetric
from refinery.storage import Database


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

class ProtocolComplianceMetrics(BaseModel):
    valid_tool_schemas: int = 0
    total_tools: int = 0
    valid_resource_uris: int = 0
    total_resources: int = 0
    transport_hardened: bool = False
    auth_implemented: bool = False
    structured_output_usage: float = 0.0
    error_handling_coverage: float = 0.0


class CoverageMetrics(BaseModel):
    test_pass_rate: float = 0.0
    test_coverage: float = 0.0
    protocol_test_coverage: float = 0.0
    integration_test_count: int = 0


class SecurityMetrics(BaseModel):
    secrets_scan_clean: bool = False
    dependency_vulnerabilities: int = 0
    input_validation_coverage: float = 0.0
    owasp_llm_compliance: float = 0.0


class ReliabilityMetrics(BaseModel):
    error_rate: float = 0.0
    p95_latency_ms: float = 0.0
    uptime_percent: float = 100.0


class GovernanceMetrics(BaseModel):
    policy_violations: int = 0
    failed_approvals: int = 0
    audit_completeness: float = 0.0
    adr_coverage: float = 0.0


class ScorecardInput(BaseModel):
    target: str
    protocol_compliance: ProtocolComplianceMetrics = Field(default_factory=ProtocolComplianceMetrics)
    testing: CoverageMetrics = Field(default_factory=CoverageMetrics)
    security: SecurityMetrics = Field(default_factory=SecurityMetrics)
    reliability: ReliabilityMetrics = Field(default_factory=ReliabilityMetrics)
    governance: GovernanceMetrics = Field(default_factory=GovernanceMetrics)
    notes: str = ""


# ---------------------------------------------------------------------------
# Dimension builders
# ---------------------------------------------------------------------------

def _metric(name: str, value: float, threshold: float) -> SubMetric:
    return SubMetric(name=name, value=max(0.0, min(1.0, value)), threshold=threshold, passed=value >= threshold)


def _ratio(part: int, total: int) -> float:
    return part / total if total > 0 else 1.0


def _protocol(pc: ProtocolComplianceMetrics) -> ScorecardDimension:
    tools = _ratio(pc.valid_tool_schemas, pc.total_tools)
    resources = _ratio(pc.valid_resource_uris, pc.total_resources)
    score = (
        tools * 0.3 + resources * 0.2
        + (0.2 if pc.transport_hardened else 0.0)
        + (0.1 if pc.auth_implemented else 0.0)
        + pc.structured_output_usage * 0.1
        + pc.error_handling_coverage * 0.1
    )
    return ScorecardDimension(name="Protocol Compliance", weight=0.25, primary=True, score=score, metrics=[
        _metric("Tool Schema Validity", tools, 0.9),
        _metric("Resource URI Validity", resources, 0.9),
        _metric("Transport Hardening", 1.0 if pc.transport_hardened else 0.0, 0.8),
        _metric("Auth Implementation", 1.0 if pc.auth_implemented else 0.0, 0.7),
        _metric("Structured Output Usage", pc.structured_output_usage, 0.5),
        _metric("Error Handling", pc.error_handling_coverage, 0.8),
    ])


def _testing(t: CoverageMetrics) -> ScorecardDimension:
    integration = min(t.integration_test_count / 10, 1.0)
    score = t.test_pass_rate * 0.4 + t.test_coverage * 0.3 + t.protocol_test_coverage * 0.2 + integration * 0.1
    return ScorecardDimension(name="Testing", weight=0.2, primary=True, score=score, metrics=[
        _metric("Test Pass Rate", t.test_pass_rate, 0.95),
        _metric("Test Coverage", t.test_coverage, 0.7),
        _metric("Protocol Test Coverage", t.protocol_test_coverage, 0.5),
        _metric("Integration Tests", integration, 0.3),
    ])


def _security(s: SecurityMetrics) -> ScorecardDimension:
    deps = max(0.0, 1 - s.dependency_vulnerabilities / 10)
    score = (
        (0.3 if s.secrets_scan_clean else 0.0)
        + deps * 0.25
        + s.input_validation_coverage * 0.25
        + s.owasp_llm_compliance * 0.2
    )
    return ScorecardDimension(name="Security", weight=0.25, primary=True, score=score, metrics=[
        _metric("Secrets Scan", 1.0 if s.secrets_scan_clean else 0.0, 1.0),
        _metric("Dependency Vulnerabilities", deps, 0.8),
        _metric("Input Validation", s.input_validation_coverage, 0.7),
        _metric("OWASP LLM Compliance", s.owasp_llm_compliance, 0.6),
    ])


def _reliability(r: ReliabilityMetrics) -> ScorecardDimension:
    latency = 1.0 if r.p95_latency_ms < 500 else min(1.0, 500 / r.p95_latency_ms)
    errors = max(0.0, 1 - r.error_rate)
    score = errors * 0.4 + latency * 0.3 + (r.uptime_percent / 100) * 0.3
    return ScorecardDimension(name="Reliability", weight=0.15, score=score, metrics=[
        _metric("Error Rate", errors, 0.95),
        _metric("P95 Latency", latency, 0.8),
        _metric("Uptime", r.uptime_percent / 100, 0.99),
    ])


def _governance(g: GovernanceMetrics) -> ScorecardDimension:
    violations = max(0.0, 1 - g.policy_violations / 5)
    approvals = max(0.0, 1 - g.failed_approvals / 3)
    score = violations * 0.3 + approvals * 0.2 + g.audit_completeness * 0.3 + g.adr_coverage * 0.2
    return ScorecardDimension(name="Governance", weight=0.15, score=score, metrics=[
        _metric("Policy Violations", violations, 0.9),
        _metric("Failed Approvals", approvals, 0.9),
        _metric("Audit Completeness", g.audit_completeness, 0.8),
        _metric("ADR Coverage", g.adr_coverage, 0.5),
    ])


def build_snapshot(data: ScorecardInput) -> ScorecardSnapshot:
    dimensions = [
        _protocol(data.protocol_compliance),
        _testing(data.testing),
        _security(data.security),
        _reliability(data.reliability),
        _governance(data.governance),
    ]
    total_weight = sum(d.weight for d in dimensions)
    overall = sum(d.score * d.weight for d in dimensions) / total_weight if total_weight else 0.0
    return ScorecardSnapshot(target=data.target, dimensions=dimensions, overall=overall, notes=data.notes)


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------

@dataclass
class DimensionDelta:
    name: str
    baseline: float
    current: float
    delta: float
    primary: bool


@dataclass
class ScorecardComparison:
    overall_delta: float
    deltas: list[DimensionDelta] = field(default_factory=list)
    any_primary_degraded: bool = False
    monotonic_improvement: bool = True


def compare(baseline: ScorecardSnapshot, current: ScorecardSnapshot) -> ScorecardComparison:
    current_scores = {d.name: d.score for d in current.dimensions}
    deltas = []
    for dim in baseline.dimensions:
        if dim.name not in current_scores:
            continue
        now = current_scores[dim.name]
        deltas.append(DimensionDelta(dim.name, dim.score, now, now - dim.score, dim.primary))

    degraded = any(d.primary and d.delta < 0 for d in deltas)
    overall_delta = current.overall - baseline.overall
    return ScorecardComparison(
        overall_delta=overall_delta,
        deltas=deltas,
        any_primary_degraded=degraded,
        monotonic_improvement=not degraded and overall_delta >= 0,
    )


def format_report(snapshot: ScorecardSnapshot) -> str:
    lines = [
        "# Scorecard Report",
        "",
        f"**Target**: {snapshot.target}",
        f"**Captured**: {snapshot.created_at}",
        f"**Overall Score**: {snapshot.overall * 100:.1f}%",
        "",
    ]
    for dim in snapshot.dimensions:
        primary = " (PRIMARY)" if dim.primary else ""
        lines.append(f"## {dim.name}{primary} — {dim.score * 100:.1f}% (weight: {dim.weight})")
        for m in dim.metrics:
            lines.append(f"  - {m.name}: {m.value:.2f} (threshold: {m.threshold}) [{'PASS' if m.passed else 'FAIL'}]")
        lines.append("")
    return "\n".join(lines)


class ScorecardEngine:
    def __init__(self, db: Database, audit: AuditLog):
        self.db = db
        self.audit = audit

    def capture(self, data: ScorecardInput) -> ScorecardSnapshot:
        snapshot = build_snapshot(data)
        self.db.insert_scorecard(snapshot)
        self.audit.record("scorecard.capture", "scorecard_engine", "scorecard", snapshot.snapshot_id, {
            "target": data.target,
            "overall": round(snapshot.overall, 4),
            "dimensions": {d.name: round(d.score, 4) for d in snapshot.dimensions},
        })
        logger.info(f"[SCORECARD] {data.target}: overall {snapshot.overall:.3f}")
        return snapshot

    def baseline(self, target: str) -> ScorecardSnapshot | None:
        return self.db.latest_scorecard(target)
