from refinery.research.consensus import ConsensusEngine, compute_consensus
from refinery.research.ingestion import ResearchQuery, ResearchService, feed_confidence
from refinery.research.normalizer import FindingValidationError, normalize_findings

__all__ = [
    "ConsensusEngine",
    "FindingValidationError",
    "ResearchQuery",
    "ResearchService",
    "compute_consensus",
    "feed_confidence",
    "normalize_findings",
]
