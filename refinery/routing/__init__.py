from refinery.routing.classifier import ClassifyInput, TaskClassification, classify_task
from refinery.routing.deliberation import DeliberationEngine, analyze_agreement
from refinery.routing.router import BudgetExceededError, Router

__all__ = [
    "BudgetExceededError",
    "ClassifyInput",
    "DeliberationEngine",
    "Router",
    "TaskClassification",
    "analyze_agreement",
    "classify_task",
]
