"""
REFINERY Governance Gate

The human-in-the-loop checkpoint. A recorded approval is the only
thing that can satisfy a gate; the engine never approves itself.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from refinery.audit_logger import AuditLog
from refinery.decision.policy import autonomy_requires_approval
from refinery.models import GovernanceApproval, ImprovementProposal, new_id
from refinery.storage import Database

TARGET_TYPES = ("proposal", "plan", "release", "adr_override", "pipeline")
DEFAULT_ROLLBACK = "Revert the merge commit and redeploy the previous version"


class InvalidApprovalError(ValueError):
    """Raised when an approval does not acknowledge both risk and rollback."""


@dataclass
class GateDecision:
    allowed: bool
    requires_approval: bool
    has_approval: bool
    reason: str


def requires_approval(autonomy: str, target_type: str, risk_level: str) -> bool:
    if autonomy == "auto_merge" and target_type in ("release", "adr_override"):
        return True
    if autonomy == "auto_release" and target_type == "adr_override":
        return True
    return autonomy_requires_approval(autonomy, risk_level)


class GovernanceGate:
    def __init__(self, db: Database, audit: AuditLog):
        self.db = db
        self.audit = audit

    def check_gate(self, target_type: str, target_id: str, target: str, risk_level: str) -> GateDecision:
        config = self.db.get_target(target)
        autonomy = config.autonomy_level if config else "advisory"
        approved = self.db.has_approval(target_type, target_id)

        if not requires_approval(autonomy, target_type, risk_level):
            return GateDecision(
                True, False, approved,
                f'Autonomy level "{autonomy}" allows automatic {target_type} for {risk_level} risk',
            )
        if approved:
            return GateDecision(True, True, True, f"Approved: governance approval exists for {target_type} {target_id}")
        return GateDecision(
            False, True, False,
            f"Blocked: {target_type} requires human approval (autonomy: {autonomy}, risk: {risk_level})",
        )

    def record_approval(
        self,
        target_type: str,
        target_id: str,
        approved_by: str,
        risk_acknowledged: bool,
        rollback_plan_acknowledged: bool,
        notes: str = "",
    ) -> GovernanceApproval:
        if target_type not in TARGET_TYPES:
            raise InvalidApprovalError(f"Unknown target type: {target_type}. Known: {list(TARGET_TYPES)}")
        if not (risk_acknowledged and rollback_plan_acknowledged):
            raise InvalidApprovalError(
                "An approval must acknowledge both the risk and the rollback plan"
            )

        approval = GovernanceApproval(
            target_type=target_type,
            target_id=target_id,
            approved_by=approved_by,
            risk_acknowledged=risk_acknowledged,
            rollback_plan_acknowledged=rollback_plan_acknowledged,
            notes=notes,
        )
        self.db.insert_approval(approval)
        self.audit.record("governance.approval", approved_by, target_type, target_id, {
            "approval_id": approval.approval_id,
            "notes": notes,
        })
        logger.info(f"[GOVERNANCE] {target_type} {target_id} approved by {approved_by}")
        return approval

    def escalate(self, reason: str, target_type: str, target_id: str, triggers: list[str] | None = None) -> dict:
        escalation_id = new_id("esc")
        triggers = triggers or []
        self.audit.record("governance.escalation", "governance_gate", target_type, target_id, {
            "escalation_id": escalation_id,
            "reason": reason,
            "triggers": triggers,
        })
        message = f'Human review required for {target_type} "{target_id}": {reason}.'
        if triggers:
            message += f" Triggers: {', '.join(triggers)}."
        logger.warning(f"[GOVERNANCE] {message}")
        return {"escalation_id": escalation_id, "message": message}


def build_approval_request(proposal: ImprovementProposal, rollback_plan: str | None = None) -> dict:
    criteria = "\n".join(f"  - {c}" for c in proposal.acceptance_criteria)
    return {
        "target_type": "proposal",
        "target_id": proposal.proposal_id,
        "risk_level": proposal.risk_level,
        "summary": f"{proposal.title}\n\nRecommendation: {proposal.recommendation}",
        "rollback_plan": rollback_plan or DEFAULT_ROLLBACK,
        "changes_description": (
            f"Category: {proposal.category}\n"
            f"Estimated LOC: {proposal.estimated_loc}\n"
            f"Acceptance Criteria:\n{criteria}"
        ),
    }
