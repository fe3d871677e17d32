"""Model-backed extraction and recovery validators."""

from .llm import (
    EvidenceItem,
    ExtractionPlan,
    ExtractionValidation,
    FailureRecoveryPlan,
    LLMValidators,
    SearchFirstDecision,
)

__all__ = [
    "EvidenceItem",
    "ExtractionPlan",
    "ExtractionValidation",
    "FailureRecoveryPlan",
    "LLMValidators",
    "SearchFirstDecision",
]
