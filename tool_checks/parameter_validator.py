"""
Pre-execution parameter validation (gate 1).

Checks, in order and short-circuiting on the first hard failure:
  1. schema: tool known, required present, types, bounds, enums
  2. ground truth: tool-specific plausibility against the current image
  3. history: deviation from parameters that worked on similar images

The final confidence is the minimum of the three signals. The function is
pure: identical inputs (including history contents) give identical results.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional, Tuple

from ground_truth.image_analyzer import ImageAnalysis

from .registry import ToolSpec, get_tool, known_tools
from .results import IssueCode, Severity, Stage, ValidationIssue, ValidationResult
from .schema import check_schema

DEFAULT_HISTORICAL_CONFIDENCE = 75.0
LOW_HISTORICAL_CONFIDENCE = 70.0
HISTORY_LIMIT = 5
MIN_HISTORY_SAMPLES = 3
DEVIATION_FRACTION = 0.15   # of the parameter's declared range


def validate(
    tool_name: str,
    parameters: Any,
    current_analysis: ImageAnalysis,
    history=None,
) -> ValidationResult:
    """
    Validate a proposed tool call before execution.

    Args:
        tool_name: Name of the proposed tool.
        parameters: Proposed parameter mapping (untrusted).
        current_analysis: Ground-truth analysis of the image the tool will run on.
        history: Optional HistoryStore-like object (find_similar, parameter_centroid).

    Returns:
        ValidationResult. Never raises for bad input.
    """
    spec = get_tool(tool_name)
    if spec is None:
        issue = ValidationIssue(
            IssueCode.UNKNOWN_TOOL,
            f"Unknown tool '{tool_name}'. Known tools: {', '.join(known_tools())}",
            "tool_name",
        )
        return ValidationResult.from_issues([issue], confidence=0, reasoning="Tool is not registered.")

    # 1. Schema
    schema_issues = check_schema(spec.schema, parameters)
    if any(i.is_error for i in schema_issues):
        return ValidationResult.from_issues(
            schema_issues,
            confidence=0,
            reasoning=f"Schema check failed for {tool_name}.",
        )

    effective = spec.schema.with_defaults(parameters)

    # 2. Ground truth
    report = spec.plausibility(effective, current_analysis)
    issues = schema_issues + report.issues
    reasoning = [f"Schema check passed for {tool_name}."] + report.notes
    if not report.ok:
        reasoning.append("Ground-truth check failed.")
        return ValidationResult.from_issues(
            issues,
            confidence=min(report.confidence, 100.0),
            reasoning="\n".join(reasoning),
        )

    # 3. History
    hist_confidence, adjusted, hist_issues, hist_notes = _historical_check(
        spec, parameters, effective, current_analysis, history
    )
    issues += hist_issues
    reasoning += hist_notes

    # 4. Combination
    confidence = min(100.0, report.confidence, hist_confidence)
    reasoning.append(
        f"Confidence {confidence:.0f} = min(schema 100, ground truth {report.confidence:.0f}, history {hist_confidence:.0f})."
    )
    return ValidationResult.from_issues(
        issues,
        confidence=confidence,
        reasoning="\n".join(reasoning),
        adjusted_parameters=adjusted,
        historical_confidence=hist_confidence,
    )


def _historical_check(
    spec: ToolSpec,
    parameters: dict,
    effective: dict,
    analysis: ImageAnalysis,
    history,
) -> Tuple[float, Optional[dict], List[ValidationIssue], List[str]]:
    issues: List[ValidationIssue] = []
    notes: List[str] = []
    if history is None:
        notes.append("No history available; default historical confidence.")
        return DEFAULT_HISTORICAL_CONFIDENCE, None, issues, notes

    try:
        similar = history.find_similar(spec.name, analysis, limit=HISTORY_LIMIT)
    except Exception as e:
        print(f"[ParameterValidator] Historical lookup failed: {e}")
        notes.append("History lookup failed; default historical confidence.")
        return DEFAULT_HISTORICAL_CONFIDENCE, None, issues, notes

    if not similar:
        notes.append(f"No successful history for {spec.name}.")
        return DEFAULT_HISTORICAL_CONFIDENCE, None, issues, notes

    hist_confidence = sum(r.confidence for r in similar) / len(similar)
    notes.append(f"{len(similar)} similar successful run(s), mean confidence {hist_confidence:.0f}.")
    if hist_confidence < LOW_HISTORICAL_CONFIDENCE:
        issues.append(_history_warning(
            IssueCode.LOW_HISTORICAL_CONFIDENCE,
            f"Past {spec.name} runs on similar images averaged only {hist_confidence:.0f}% confidence",
            "",
        ))

    if len(similar) < MIN_HISTORY_SAMPLES:
        return hist_confidence, None, issues, notes

    ranges: Dict[str, Tuple[float, float]] = {}
    for name in spec.schema.properties:
        bounds = spec.schema.numeric_range(name)
        if bounds is not None:
            ranges[name] = bounds
    centroid = history.parameter_centroid(spec.name, list(ranges), records=similar)

    adjusted = None
    for name in sorted(ranges):
        if name not in centroid or name not in effective:
            continue
        lo, hi = ranges[name]
        value, center = float(effective[name]), float(centroid[name])
        if abs(value - center) <= DEVIATION_FRACTION * (hi - lo):
            continue
        nudged = round((value + center) / 2.0, 2)
        if adjusted is None:
            adjusted = copy.deepcopy(parameters)
        adjusted[name] = nudged
        issues.append(_history_warning(
            IssueCode.HISTORICAL_DEVIATION,
            f"{name}={value:g} deviates from the historical centroid {center:.1f}; suggest {nudged:g}",
            name,
        ))
        notes.append(f"Suggested {name} adjustment: {value:g} -> {nudged:g} based on historical patterns.")

    return hist_confidence, adjusted, issues, notes


def _history_warning(code: IssueCode, message: str, parameter: str) -> ValidationIssue:
    return ValidationIssue(code, message, parameter, Severity.WARNING, Stage.HISTORY)

