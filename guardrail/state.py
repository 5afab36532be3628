"""
Core data structures for the guardrail retry loop.

GuardState is the LangGraph TypedDict that flows through all nodes.
Supporting dataclasses represent the incoming proposal, per-attempt audit
entries, the persisted ExecutionRecord and the terminal GuardOutcome.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Annotated, List, Optional, TypedDict

from ground_truth.image_analyzer import ImageAnalysis
from tool_checks.results import ResultValidation, Stage, ValidationResult

from .errors import (
    AnalysisError,
    ExecutionError,
    GroundTruthError,
    ResultMismatchError,
    SchemaError,
)


# ---------------------------------------------------------------------------
# Reducer helper: append-only list (LangGraph accumulates instead of replacing)
# ---------------------------------------------------------------------------

def _append_reducer(existing: list, new: list) -> list:
    """LangGraph reducer: append new items to existing list."""
    if existing is None:
        existing = []
    if new is None:
        return existing
    return existing + new


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    PROPOSED = "proposed"
    VALIDATING = "validating"
    REJECTED = "rejected"
    EXECUTING = "executing"
    VALIDATED = "validated"
    ACCEPTED = "accepted"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({Phase.REJECTED, Phase.ACCEPTED, Phase.EXHAUSTED, Phase.FAILED})


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolCallProposal:
    """Tool call proposed by the model layer. Untrusted."""
    tool_name: str
    parameters: dict = field(default_factory=dict)
    depends_on_previous: bool = False   # runs on the output of the previous proposal
    call_id: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCallProposal":
        return cls(
            tool_name=str(data.get("tool_name") or data.get("toolName") or ""),
            parameters=data.get("parameters") or {},
            depends_on_previous=bool(data.get("depends_on_previous", data.get("dependsOnPrevious", False))),
            call_id=str(data.get("call_id") or data.get("id") or ""),
        )


@dataclass
class AttemptRecord:
    """Audit entry for one validate/execute/score pass."""
    attempt: int
    parameters: dict
    phase: Phase
    validation: Optional[ValidationResult] = None
    result: Optional[ResultValidation] = None
    confidence: float = 0.0
    band: str = "critical"
    execution_time_ms: float = 0.0
    result_image: Optional[bytes] = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.result.success


@dataclass
class ResultMetrics:
    pixels_changed: int = 0
    percentage_changed: float = 0.0
    quality_score: float = 0.0
    execution_time_ms: float = 0.0


@dataclass
class ExecutionRecord:
    """History Store entry. Written once per terminal outcome, never edited."""
    tool_name: str
    parameters: dict
    success: bool
    confidence: float
    result_metrics: ResultMetrics
    image_snapshot: ImageAnalysis
    timestamp: float
    phase: str = Phase.ACCEPTED.value
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionRecord":
        return cls(
            tool_name=data["tool_name"],
            parameters=data.get("parameters") or {},
            success=bool(data.get("success", False)),
            confidence=float(data.get("confidence", 0.0)),
            result_metrics=ResultMetrics(**(data.get("result_metrics") or {})),
            image_snapshot=ImageAnalysis.from_dict(data["image_snapshot"]),
            timestamp=float(data.get("timestamp", 0.0)),
            phase=str(data.get("phase", Phase.ACCEPTED.value)),
            record_id=str(data.get("record_id") or uuid.uuid4().hex[:12]),
        )


@dataclass
class GuardOutcome:
    """Terminal summary returned to the caller for one proposal."""
    proposal: ToolCallProposal
    phase: Phase
    confidence: float
    band: str
    reasoning: str
    parameters: dict = field(default_factory=dict)
    result_image: Optional[bytes] = field(default=None, repr=False)
    validation: Optional[ValidationResult] = None
    result: Optional[ResultValidation] = None
    attempts: List[AttemptRecord] = field(default_factory=list)
    best_attempt: Optional[AttemptRecord] = None
    suggested_fix: Optional[dict] = None
    record: Optional[ExecutionRecord] = None
    error_kind: str = ""

    @property
    def accepted(self) -> bool:
        return self.phase is Phase.ACCEPTED

    def raise_for_verdict(self) -> None:
        """Raise the matching GuardrailError unless the outcome was accepted."""
        if self.phase is Phase.ACCEPTED:
            return
        message = f"{self.proposal.tool_name}: {self.reasoning}"
        if self.phase is Phase.REJECTED:
            if self.validation is not None and self.validation.failed_stage is Stage.SCHEMA:
                raise SchemaError(message)
            raise GroundTruthError(message)
        if self.phase is Phase.FAILED:
            if self.error_kind == "analysis":
                raise AnalysisError(message)
            raise ExecutionError(message)
        raise ResultMismatchError(message)

    def summary(self) -> str:
        lines = [
            f"[{self.phase.value.upper()}] {self.proposal.tool_name} "
            f"confidence {self.confidence:.0f} ({self.band}) after {len(self.attempts)} attempt(s)",
            self.reasoning,
        ]
        if self.suggested_fix:
            lines.append(f"Suggested parameters: {self.suggested_fix}")
        return "\n".join(line for line in lines if line)


# ---------------------------------------------------------------------------
# LangGraph State
# ---------------------------------------------------------------------------

class GuardState(TypedDict):
    """Complete state flowing through the guard StateGraph."""
    # Input
    proposal: ToolCallProposal
    original_image: bytes                   # every attempt executes against this
    original_analysis: ImageAnalysis

    # Current attempt
    attempt: int
    current_parameters: dict
    phase: str                              # Phase value
    validation: ValidationResult
    result_image: bytes
    result: ResultValidation
    confidence: float
    band: str
    execution_time_ms: float

    # Audit trail (append-only)
    attempts: Annotated[list, _append_reducer]      # List[AttemptRecord]

    # Terminal
    reasoning: str
    error_message: str
    error_kind: str                         # "" | "execution" | "analysis"
    outcome: GuardOutcome

    # Runtime config snapshot (configs/guard_config.yaml)
    guard_config: dict
