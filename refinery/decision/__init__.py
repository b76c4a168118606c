from refinery.decision.adr import ADRManager, format_markdown
from refinery.decision.oscillation import OscillationEngine, is_no_op, should_flip
from refinery.decision.policy import PolicyEngine, autonomy_requires_approval
from refinery.decision.scorecard import ScorecardEngine, ScorecardInput, compare, format_report
from refinery.decision.triage import TriageEngine

__all__ = [
    "ADRManager",
    "OscillationEngine",
    "PolicyEngine",
    "ScorecardEngine",
    "ScorecardInput",
    "TriageEngine",
    "autonomy_requires_approval",
    "compare",
    "format_markdown",
    "format_report",
    "is_no_op",
    "should_flip",
]
