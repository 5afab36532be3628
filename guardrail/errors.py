"""
Error taxonomy for the guardrail.

Validators never raise these for expected bad input; they return structured
verdicts. The exceptions exist for callers that want to surface a terminal
outcome as an exception (see GuardOutcome.raise_for_verdict) and for the two
collaborators that genuinely fail: image decoding and the edit gateway.
"""

from __future__ import annotations


class GuardrailError(Exception):
    """Base class for all guardrail errors."""


class SchemaError(GuardrailError):
    """Parameters are malformed, of the wrong type, or out of bounds."""


class GroundTruthError(GuardrailError):
    """Parameters contradict measured image facts (e.g. a colour not in the image)."""


class ExecutionError(GuardrailError):
    """The edit gateway failed to produce a result image."""


class ResultMismatchError(GuardrailError):
    """The edit ran but its measured effect does not match the tool's profile."""


class AnalysisError(GuardrailError):
    """Image bytes could not be decoded."""
