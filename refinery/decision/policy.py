"""
REFINERY Policy Engine

Evaluates a proposal against the stored policy rules and the target's
registered configuration. Blocking violations deny the change; the
risk-tier and autonomy checks only raise `requires_approval`.
"""

from __future__ import annotations

from datetime import timedelta

from loguru import logger

from refinery.audit_logger import AuditLog
from refinery.config_loader import RefineryConfig
from refinery.models import (
    ImprovementProposal,
    PolicyEvaluation,
    PolicyRule,
    PolicyViolation,
    TargetConfig,
    parse_ts,
    risk_rank,
    utc_now,
)
from refinery.storage import Database

AUTONOMY_LEVELS: tuple[str, ...] = ("advisory", "pr_only", "auto_merge", "auto_release")
ACTIVE_STATUSES: tuple[str, ...] = ("in_progress", "pr_open", "testing", "merged")


def autonomy_requires_approval(autonomy_level: str, risk_level: str) -> bool:
    """Default approval requirement for a change at *risk_level* under *autonomy_level*."""
    if autonomy_level == "auto_merge":
        return risk_level in ("high", "critical")
    if autonomy_level == "auto_release":
        return risk_level == "critical"
    # advisory, pr_only and anything unknown
    return True


def _autonomy_rank(level: str) -> int:
    return AUTONOMY_LEVELS.index(level) if level in AUTONOMY_LEVELS else 0


class PolicyEngine:
    def __init__(self, config: RefineryConfig, db: Database, audit: AuditLog):
        self.config = config
        self.db = db
        self.audit = audit

    def evaluate(self, proposal: ImprovementProposal) -> PolicyEvaluation:
        target = self.db.get_target(proposal.target)
        violations: list[PolicyViolation] = []
        requires_approval = False

        for rule in self.db.policy_rules(enabled=True):
            violation, needs_approval = self._evaluate_rule(rule, proposal, target)
            if violation:
                violations.append(violation)
            requires_approval = requires_approval or needs_approval

        if target:
            violations.extend(v for v in (
                self._check_change_budget(target),
                self._check_category(proposal, target),
                self._check_size(proposal, target),
            ) if v)
            if autonomy_requires_approval(target.autonomy_level, proposal.risk_level):
                requires_approval = True
        else:
            # Unregistered targets are advisory.
            requires_approval = True

        allowed = not any(v.severity == "blocking" for v in violations)
        if not allowed:
            self.audit.record("policy.violation", "policy_engine", "proposal", proposal.proposal_id, {
                "violations": [v.message for v in violations],
            }, correlation_id=proposal.pipeline_id)
            logger.info(f"[POLICY] {proposal.proposal_id} denied: {violations[0].message}")

        return PolicyEvaluation(allowed=allowed, requires_approval=requires_approval, violations=violations)

    # -- stored rules --------------------------------------------------------

    def _evaluate_rule(
        self,
        rule: PolicyRule,
        proposal: ImprovementProposal,
        target: TargetConfig | None,
    ) -> tuple[PolicyViolation | None, bool]:
        params = rule.params

        if rule.category == "scope":
            allowed_targets = params.get("allowed_servers") or []
            if allowed_targets and proposal.target not in allowed_targets:
                return PolicyViolation(
                    rule=rule.name, severity="blocking",
                    message=f"Target {proposal.target} is not in the allowed scope",
                ), False

        elif rule.category == "risk_tier":
            max_auto_risk = params.get("max_auto_risk", "medium")
            return None, risk_rank(proposal.risk_level) > risk_rank(max_auto_risk)

        elif rule.category == "budget":
            limit = params.get("max_proposals_per_window", 5)
            running = len(self.db.list_proposals(proposal.target, "in_progress"))
            if running >= limit:
                return PolicyViolation(
                    rule=rule.name, severity="blocking",
                    message=f"Change budget exhausted: {running}/{limit} proposals already in progress",
                ), False

        elif rule.category == "autonomy":
            required = params.get("min_autonomy_level", "pr_only")
            current = target.autonomy_level if target else "advisory"
            return None, _autonomy_rank(required) > _autonomy_rank(current)

        return None, False

    # -- built-in checks -----------------------------------------------------

    def _check_change_budget(self, target: TargetConfig) -> PolicyViolation | None:
        window_start = utc_now() - timedelta(hours=target.window_hours)
        recent = [
            p for p in self.db.list_proposals(target.target, list(ACTIVE_STATUSES))
            if parse_ts(p.created_at) >= window_start
        ]
        if len(recent) >= target.change_budget_per_window:
            return PolicyViolation(
                rule="Change Budget", severity="blocking",
                message=(
                    f"Change budget exhausted: {len(recent)}/{target.change_budget_per_window} "
                    f"in the last {target.window_hours}h"
                ),
            )
        return None

    def _check_category(self, proposal: ImprovementProposal, target: TargetConfig) -> PolicyViolation | None:
        if target.allowed_categories and proposal.category not in target.allowed_categories:
            return PolicyViolation(
                rule="Category Restriction", severity="blocking",
                message=f'Category "{proposal.category}" is not allowed for {target.target}',
            )
        return None

    def _check_size(self, proposal: ImprovementProposal, target: TargetConfig) -> PolicyViolation | None:
        limit = target.max_loc_per_pr or self.config.defaults.max_loc_per_pr
        if proposal.estimated_loc > limit:
            return PolicyViolation(
                rule="LOC Budget", severity="warning",
                message=f"Estimated {proposal.estimated_loc} LOC exceeds maximum {limit} per PR",
            )
        return None

    # -- seeding -------------------------------------------------------------

    def seed_defaults(self) -> list[PolicyRule]:
        """Install the default rules once. Existing rule sets are left alone."""
        if self.db.policy_rules():
            return []
        rules = [
            PolicyRule(
                name="Default Risk Tier", category="risk_tier",
                description="Require human approval for high/critical risk changes",
                params={"max_auto_risk": "medium"},
            ),
            PolicyRule(
                name="Default Change Budget", category="budget",
                description="Limit concurrent in-progress proposals per target",
                params={"max_proposals_per_window": 5},
            ),
            PolicyRule(
                name="Default Autonomy Gate", category="autonomy",
                description="Enforce PR-only autonomy as the minimum level",
                params={"min_autonomy_level": "pr_only"},
            ),
        ]
        for rule in rules:
            self.db.insert_policy(rule)
        logger.info(f"[POLICY] Seeded {len(rules)} default rules")
        return rules
