"""
Confidence scoring: the system is only as confident as its weakest check.
"""

from __future__ import annotations

from tool_checks.results import ResultValidation, ValidationResult, clamp_score

ACCEPTANCE_THRESHOLD = 70.0

BANDS = (
    (95.0, "excellent"),
    (80.0, "good"),
    (70.0, "fair"),
    (50.0, "poor"),
)


def score(validation: ValidationResult, result: ResultValidation) -> float:
    """Final confidence = min(pre-execution confidence, result quality score)."""
    return clamp_score(min(validation.confidence, result.quality_score))


def confidence_band(confidence: float) -> str:
    value = clamp_score(confidence)
    for floor, name in BANDS:
        if value >= floor:
            return name
    return "critical"


def is_acceptable(confidence: float, result: ResultValidation, threshold: float = ACCEPTANCE_THRESHOLD) -> bool:
    return bool(result.success) and confidence >= threshold
