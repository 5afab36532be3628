"""
Guardrail: validation-and-confidence pipeline for model-proposed image edits.

Built on LangGraph, wraps an opaque edit gateway with
Validate → Execute → CheckResult → Score → (Adjust → Validate)* → Finalize.

Public entry points live in the submodules:
  guardrail.controller  RetryController, run_proposals
  guardrail.graph       build_guard_graph
  guardrail.history     HistoryStore
  guardrail.scoring     score, confidence_band
  guardrail.session     load_guard_config
"""

from .errors import (
    AnalysisError,
    ExecutionError,
    GroundTruthError,
    GuardrailError,
    ResultMismatchError,
    SchemaError,
)

__all__ = [
    "AnalysisError",
    "ExecutionError",
    "GroundTruthError",
    "GuardrailError",
    "ResultMismatchError",
    "SchemaError",
]
