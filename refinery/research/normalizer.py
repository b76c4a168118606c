"""
Findings normalizer — validation and sanitising of agent-supplied findings.

Validation runs first and rejects the whole batch with every problem
listed; nothing is stored unless the batch is clean.
"""

from __future__ import annotations

from typing import Any

from refinery.models import IMPACT_FIELDS, RISK_LEVELS, Evidence, ExpectedImpact, Finding, RiskInfo

_EVIDENCE_TYPES = ("url", "quote", "spec_reference")
_QUALITIES = ("A", "B", "C")


class FindingValidationError(ValueError):
    """Raised when a findings batch is malformed. Carries every problem found."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__(f"{len(problems)} problem(s) in findings: " + "; ".join(problems))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_findings(raw: Any) -> None:
    problems: list[str] = []
    if not isinstance(raw, list):
        raise FindingValidationError([f"findings must be a list, got {type(raw).__name__}"])

    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            problems.append(f"[{i}] finding must be an object")
            continue
        for key in ("claim", "recommendation"):
            if not isinstance(item.get(key), str) or not item[key].strip():
                problems.append(f"[{i}] missing {key}")

        impact = item.get("expected_impact")
        if not isinstance(impact, dict):
            problems.append(f"[{i}] expected_impact must be an object")
        else:
            for name in IMPACT_FIELDS:
                if name not in impact:
                    problems.append(f"[{i}] expected_impact.{name} missing")
                elif not _is_number(impact[name]):
                    problems.append(f"[{i}] expected_impact.{name} must be a number")

        risk = item.get("risk")
        level = risk.get("level") if isinstance(risk, dict) else None
        if level not in RISK_LEVELS:
            problems.append(f"[{i}] risk.level must be one of {list(RISK_LEVELS)}")

        if not isinstance(item.get("evidence"), list):
            problems.append(f"[{i}] evidence must be a list")

    if problems:
        raise FindingValidationError(problems)


def _clamp(value: float) -> float:
    return max(-1.0, min(1.0, float(value)))


def sanitize_findings(raw: list[dict[str, Any]]) -> list[Finding]:
    findings = []
    for item in raw:
        impact = item.get("expected_impact") or {}
        risk = item.get("risk") or {}
        evidence = []
        for e in item.get("evidence") or []:
            if not isinstance(e, dict):
                continue
            evidence.append(Evidence(
                type=e.get("type") if e.get("type") in _EVIDENCE_TYPES else "quote",
                value=str(e.get("value", "")).strip(),
                quality=e.get("quality") if e.get("quality") in _QUALITIES else "C",
            ))
        findings.append(Finding(
            claim=str(item.get("claim", "")).strip(),
            recommendation=str(item.get("recommendation", "")).strip(),
            expected_impact=ExpectedImpact(**{name: _clamp(impact.get(name, 0)) for name in IMPACT_FIELDS}),
            risk=RiskInfo(level=risk.get("level", "low"), notes=str(risk.get("notes", "")).strip()),
            evidence=evidence,
        ))
    return findings


def normalize_findings(raw: Any) -> list[Finding]:
    """Validate, then sanitise."""
    validate_findings(raw)
    return sanitize_findings(raw)
