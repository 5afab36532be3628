"""
Verdict types returned by the two validation gates.

ValidationResult is the pre-execution verdict, ResultValidation the
post-execution one. Failure reasons are carried as enums (IssueCode,
MismatchKind) so the retry controller can branch on them without parsing
message strings.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


def clamp_score(value: float) -> float:
    """Clamp a score or percentage to [0, 100]."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(100.0, value))


# ---------------------------------------------------------------------------
# Gate 1
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class Stage(str, Enum):
    """Which part of parameter validation produced an issue."""
    SCHEMA = "schema"
    GROUND_TRUTH = "ground_truth"
    HISTORY = "history"


class IssueCode(str, Enum):
    # schema
    UNKNOWN_TOOL = "unknown_tool"
    MISSING_PARAMETER = "missing_parameter"
    WRONG_TYPE = "wrong_type"
    OUT_OF_BOUNDS = "out_of_bounds"
    NOT_IN_ENUM = "not_in_enum"
    UNKNOWN_PARAMETER = "unknown_parameter"
    # ground truth
    COLOR_NOT_FOUND = "color_not_found"
    WEAK_COLOR_MATCH = "weak_color_match"
    RARE_COLOR = "rare_color"
    INVALID_COLOR = "invalid_color"
    INVALID_INDEX = "invalid_index"
    SIZE_LIMIT = "size_limit"
    COVERAGE_LIMIT = "coverage_limit"
    LOW_COVERAGE = "low_coverage"
    OUT_OF_IMAGE = "out_of_image"
    UNSUPPORTED_OPTION = "unsupported_option"
    MISSING_DETAIL = "missing_detail"
    INCOMPATIBLE_IMAGE = "incompatible_image"
    TOLERANCE_MISMATCH = "tolerance_mismatch"
    QUALITY_RISK = "quality_risk"
    # history
    HISTORICAL_DEVIATION = "historical_deviation"
    LOW_HISTORICAL_CONFIDENCE = "low_historical_confidence"


@dataclass(frozen=True)
class ValidationIssue:
    code: IssueCode
    message: str
    parameter: str = ""
    severity: Severity = Severity.ERROR
    stage: Stage = Stage.SCHEMA

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR


@dataclass
class ValidationResult:
    """Pre-execution verdict. `errors` non-empty exactly when is_valid is False."""
    is_valid: bool
    confidence: float
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    issues: List[ValidationIssue] = field(default_factory=list)
    adjusted_parameters: Optional[dict] = None
    reasoning: str = ""
    historical_confidence: float = 75.0
    failed_stage: Optional[Stage] = None

    def __post_init__(self):
        self.confidence = clamp_score(self.confidence)
        self.historical_confidence = clamp_score(self.historical_confidence)

    @classmethod
    def from_issues(
        cls,
        issues: List[ValidationIssue],
        confidence: float,
        reasoning: str = "",
        adjusted_parameters: Optional[dict] = None,
        historical_confidence: float = 75.0,
    ) -> "ValidationResult":
        errors = [i.message for i in issues if i.is_error]
        warnings = [i.message for i in issues if not i.is_error]
        failed = next((i.stage for i in issues if i.is_error), None)
        return cls(
            is_valid=not errors,
            confidence=confidence,
            errors=errors,
            warnings=warnings,
            issues=list(issues),
            adjusted_parameters=adjusted_parameters,
            reasoning=reasoning,
            historical_confidence=historical_confidence,
            failed_stage=failed,
        )

    def error_codes(self) -> List[IssueCode]:
        return [i.code for i in self.issues if i.is_error]

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Gate 2
# ---------------------------------------------------------------------------

class MismatchKind(str, Enum):
    """Why a result did not match the tool's expected effect."""
    NO_CHANGE = "no_change"
    OVER_DESTRUCTIVE = "over_destructive"
    MISSING_TRANSPARENCY = "missing_transparency"
    DIMENSIONS_UNCHANGED = "dimensions_unchanged"
    DIMENSIONS_MISMATCH = "dimensions_mismatch"
    DECODE_ERROR = "decode_error"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class VisualDifference:
    max_delta: float = 0.0
    avg_delta: float = 0.0
    color_shift_amount: float = 0.0


@dataclass
class ResultValidation:
    """Post-execution verdict for one before/after pair."""
    success: bool
    pixels_changed: int = 0
    percentage_changed: float = 0.0
    significant_change: bool = False
    quality_score: float = 0.0
    visual_difference: VisualDifference = field(default_factory=VisualDifference)
    warnings: List[str] = field(default_factory=list)
    reasoning: str = ""
    mismatch: Optional[MismatchKind] = None
    before_size: Tuple[int, int] = (0, 0)
    after_size: Tuple[int, int] = (0, 0)

    def __post_init__(self):
        self.pixels_changed = max(0, int(self.pixels_changed))
        self.percentage_changed = clamp_score(self.percentage_changed)
        self.quality_score = clamp_score(self.quality_score)

    @classmethod
    def failure(cls, reasoning: str, mismatch: MismatchKind = MismatchKind.INTERNAL_ERROR) -> "ResultValidation":
        """Zeroed verdict for a comparison that could not be carried out."""
        return cls(success=False, reasoning=reasoning, mismatch=mismatch)

    def to_dict(self) -> dict:
        return asdict(self)
