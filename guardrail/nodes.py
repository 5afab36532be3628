"""
Node implementations for the guard StateGraph.

Nodes: validate, execute, check_result, score, adjust, finalize.
Each node takes GuardState and returns a partial state update dict.
Nodes are built per run by build_nodes() so the gateway and the history
handle are injected rather than global. Routing functions and the phase
decisions are pure and module-level.
"""

from __future__ import annotations

import copy
import math
import time
import traceback
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from ground_truth.color_utils import color_distance
from ground_truth.image_analyzer import ImageAnalysis
from tool_checks import parameter_validator, result_validator
from tool_checks.plausibility import MAX_OUTPUT_MEGAPIXELS, nearest_dominant, smart_resize_target
from tool_checks.registry import get_tool
from tool_checks.results import IssueCode, MismatchKind, ResultValidation, ValidationResult

from .errors import ExecutionError
from .scoring import confidence_band, score
from .state import (
    AttemptRecord,
    ExecutionRecord,
    GuardOutcome,
    GuardState,
    Phase,
    ResultMetrics,
)

# (tool_name, parameters, image_bytes) -> result image bytes; raises ExecutionError.
Gateway = Callable[[str, dict, bytes], bytes]

BACKGROUND_MODELS = ("bria", "codeplugtech", "fallback")


# ---------------------------------------------------------------------------
# Pure phase decisions
# ---------------------------------------------------------------------------

def decide_after_validation(validation: ValidationResult, attempts: List[AttemptRecord]) -> Phase:
    """Validating -> Executing, or Rejected (nothing executed yet) / Exhausted (retry proposal rejected)."""
    if validation.is_valid:
        return Phase.EXECUTING
    if any(a.result is not None for a in attempts or []):
        return Phase.EXHAUSTED
    return Phase.REJECTED


def decide_phase(
    result: ResultValidation,
    confidence: float,
    attempt: int,
    max_attempts: int,
    threshold: float,
) -> Phase:
    """Validated -> Accepted | Retrying | Exhausted. `attempt` is the 1-based count of executions."""
    if result.success and confidence >= threshold:
        return Phase.ACCEPTED
    if attempt >= max_attempts:
        return Phase.EXHAUSTED
    return Phase.RETRYING


def best_attempt(attempts: List[AttemptRecord]) -> Optional[AttemptRecord]:
    """Highest-confidence executed attempt; earliest wins ties."""
    executed = [a for a in attempts if a.result is not None]
    if not executed:
        return None
    return max(executed, key=lambda a: (a.confidence, -a.attempt))


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

def route_after_validate(state: GuardState) -> str:
    if state.get("phase") == Phase.EXECUTING.value:
        return "execute"
    return "finalize"


def route_after_execute(state: GuardState) -> str:
    if state.get("phase") == Phase.FAILED.value:
        return "finalize"
    return "check_result"


def route_after_score(state: GuardState) -> str:
    if state.get("phase") == Phase.RETRYING.value:
        return "adjust"
    return "finalize"


# ---------------------------------------------------------------------------
# Parameter adjustment
# ---------------------------------------------------------------------------

def derive_adjustment(
    tool_name: str,
    parameters: dict,
    result: ResultValidation,
    analysis: ImageAnalysis,
    config: Optional[dict] = None,
) -> Tuple[Optional[dict], str]:
    """
    Derive new parameters from the failure reason of the last attempt.

    Returns (parameters, explanation); parameters is None when the failure
    reason does not suggest a parameter change.
    """
    spec = get_tool(tool_name)
    if spec is None:
        return None, f"unknown tool {tool_name}"
    retry_cfg = (config or {}).get("retry", {})
    tol_step = float(retry_cfg.get("tolerance_step", 10))
    tol_max = float(retry_cfg.get("tolerance_widen_max", 50))
    tol_min = float(retry_cfg.get("tolerance_narrow_min", 10))
    amount_step = float(retry_cfg.get("amount_step", 0.2))

    # Tolerance settings are percentages; tools with a 0-255 tolerance scale them.
    tol_range = spec.schema.numeric_range("tolerance")
    if tol_range is not None:
        scale = tol_range[1] / 100.0
        tol_step, tol_max, tol_min = tol_step * scale, tol_max * scale, tol_min * scale

    params = spec.schema.with_defaults(parameters)
    kind = result.mismatch
    changes: List[str] = []

    def set_param(name: str, value: Any) -> None:
        if params.get(name) != value:
            changes.append(f"{name} {params.get(name)!r} -> {value!r}")
            params[name] = value

    def widen() -> None:
        if tol_range is not None and float(params["tolerance"]) < tol_max:
            set_param("tolerance", round(min(tol_max, float(params["tolerance"]) + tol_step), 2))
        if "amount" in spec.schema.properties:
            set_param("amount", round(min(0.9, float(params["amount"]) + amount_step), 2))

    def narrow() -> None:
        if tol_range is not None and float(params["tolerance"]) > tol_min:
            set_param("tolerance", round(max(tol_min, float(params["tolerance"]) - tol_step), 2))
        if "amount" in spec.schema.properties:
            set_param("amount", round(max(0.1, float(params["amount"]) - amount_step), 2))

    if kind is MismatchKind.NO_CHANGE:
        widen()
    elif kind is MismatchKind.OVER_DESTRUCTIVE:
        colors = params.get("colors") or []
        if tool_name == "color_knockout" and len(colors) > 1:
            # Drop the target whose matching colour covers the most of the image.
            coverage = [
                (nearest_dominant((c["r"], c["g"], c["b"]), analysis)[1], idx) for idx, c in enumerate(colors)
            ]
            worst = max(coverage, key=lambda item: (item[0].pixel_fraction if item[0] else 0.0, -item[1]))[1]
            kept = [c for idx, c in enumerate(colors) if idx != worst]
            changes.append(f"dropped target {colors[worst].get('hex')}")
            params["colors"] = kept
        else:
            narrow()
    elif kind is MismatchKind.MISSING_TRANSPARENCY:
        if tool_name == "color_knockout" and params.get("replaceMode") != "transparency":
            set_param("replaceMode", "transparency")
        elif tool_name == "background_remover":
            if params.get("backgroundColor"):
                changes.append("removed backgroundColor")
                params.pop("backgroundColor")
            else:
                current = params.get("model", BACKGROUND_MODELS[0])
                idx = BACKGROUND_MODELS.index(current) if current in BACKGROUND_MODELS else -1
                if idx + 1 < len(BACKGROUND_MODELS):
                    set_param("model", BACKGROUND_MODELS[idx + 1])
        else:
            widen()
    elif kind is MismatchKind.DIMENSIONS_UNCHANGED:
        if tool_name == "upscaler":
            limit = math.sqrt(MAX_OUTPUT_MEGAPIXELS * 1_000_000 / max(1, analysis.pixel_count))
            target = min(10.0, max(2.0, float(params["scaleFactor"]) + 1), math.floor(limit * 10) / 10)
            if target > 1:
                set_param("scaleFactor", target)
        elif tool_name == "auto_crop":
            widen()

    if not changes:
        return None, f"no parameter change derivable from {kind.value if kind else 'low confidence'}"
    return params, "; ".join(changes)


def suggest_fix(
    tool_name: str,
    parameters: Any,
    validation: ValidationResult,
    analysis: ImageAnalysis,
) -> Optional[dict]:
    """Parameter changes that would clear the hard errors of a rejected proposal, if any."""
    spec = get_tool(tool_name)
    if spec is None or not isinstance(parameters, dict):
        return None
    fix = copy.deepcopy(parameters)
    changed = False

    for issue in validation.issues:
        if not issue.is_error:
            continue
        name = issue.parameter.split(".")[0].split("[")[0]
        prop = spec.schema.properties.get(name)

        if issue.code is IssueCode.OUT_OF_BOUNDS and prop is not None and prop.type == "number":
            lo = prop.minimum if prop.minimum is not None else -math.inf
            hi = prop.maximum if prop.maximum is not None else math.inf
            fix[name] = min(hi, max(lo, fix[name]))
            changed = True
        elif issue.code in (IssueCode.NOT_IN_ENUM, IssueCode.WRONG_TYPE, IssueCode.MISSING_PARAMETER) \
                and prop is not None and prop.default is not None and "." not in issue.parameter:
            fix[name] = prop.default
            changed = True
        elif issue.code is IssueCode.COLOR_NOT_FOUND and tool_name == "color_knockout":
            fixed_colors = []
            for c in fix.get("colors", []):
                _, nearest = nearest_dominant((c["r"], c["g"], c["b"]), analysis)
                if nearest is not None and color_distance((c["r"], c["g"], c["b"]), nearest.rgb) > 30:
                    c = {"hex": nearest.hex, "r": nearest.r, "g": nearest.g, "b": nearest.b}
                fixed_colors.append(c)
            fix["colors"] = fixed_colors
            changed = True
        elif issue.code is IssueCode.SIZE_LIMIT and tool_name == "upscaler":
            limit = math.floor(math.sqrt(MAX_OUTPUT_MEGAPIXELS * 1_000_000 / max(1, analysis.pixel_count)) * 10) / 10
            if limit >= 1:
                fix["scaleFactor"] = limit
                changed = True
        elif issue.code is IssueCode.SIZE_LIMIT and tool_name == "smart_resize":
            target = smart_resize_target(spec.schema.with_defaults(fix), analysis.width, analysis.height)
            if target:
                shrink = math.sqrt(MAX_OUTPUT_MEGAPIXELS * 1_000_000 / (target[0] * target[1]))
                fix = {"width": int(target[0] * shrink), "height": int(target[1] * shrink), "unit": "px",
                       "maintainAspectRatio": True}
                changed = True
        elif issue.code is IssueCode.COVERAGE_LIMIT:
            if tool_name == "texture_cut":
                fix["amount"] = 0.9
            else:
                fix["tolerance"] = max(0, float(fix.get("tolerance", 30)) - 10)
            changed = True
        elif issue.code is IssueCode.UNSUPPORTED_OPTION and tool_name == "texture_cut":
            fix["textureType"] = "noise"
            changed = True
        elif issue.code is IssueCode.OUT_OF_IMAGE and tool_name == "pick_color_at_position":
            fix["x"] = min(max(0, fix["x"]), analysis.width - 1)
            fix["y"] = min(max(0, fix["y"]), analysis.height - 1)
            changed = True
        elif issue.code is IssueCode.INVALID_INDEX and tool_name == "recolor_image":
            fix["colorMappings"] = [
                m for m in fix.get("colorMappings", [])
                if 0 <= m.get("originalIndex", -1) < len(analysis.dominant_colors)
            ]
            changed = bool(fix["colorMappings"])

    return fix if changed else None


def _adopt_history_adjustment(
    tool_name: str,
    validation: ValidationResult,
    analysis: ImageAnalysis,
    history,
    parameters: Any,
) -> Tuple[ValidationResult, Any]:
    """Re-run gate 1 on the history-nudged parameters; keep them only if they pass."""
    adjusted = validation.adjusted_parameters
    recheck = parameter_validator.validate(tool_name, adjusted, analysis, history)
    if not recheck.is_valid:
        reason = "; ".join(recheck.errors)
        print(f"[Validate] Dropping history adjustment {adjusted}: {reason}")
        return replace(
            validation,
            adjusted_parameters=None,
            warnings=validation.warnings + [f"History adjustment dropped: {reason}"],
        ), parameters
    print(f"[Validate] Using history-adjusted parameters: {adjusted}")
    extra = [w for w in recheck.warnings if w not in validation.warnings]
    return replace(
        validation,
        confidence=min(validation.confidence, recheck.confidence),
        warnings=validation.warnings + extra,
    ), copy.deepcopy(adjusted)


# ---------------------------------------------------------------------------
# Node factory
# ---------------------------------------------------------------------------

def build_nodes(gateway: Gateway, history=None) -> Dict[str, Callable[[GuardState], dict]]:
    """Create the node callables bound to one gateway and history handle."""

    # -----------------------------------------------------------------------
    # 1. Validate
    # -----------------------------------------------------------------------
    def validate_node(state: GuardState) -> dict:
        """
        Gate 1 on the current parameters.

        History-adjusted parameters are adopted only before the first
        execution and only after they pass gate 1 themselves; retries keep
        the controller's own adjustment.

        Reads: proposal, current_parameters, original_analysis, attempts, attempt
        Writes: validation, current_parameters, phase
        """
        proposal = state["proposal"]
        params = state.get("current_parameters", proposal.parameters)
        try:
            validation = parameter_validator.validate(
                proposal.tool_name, params, state["original_analysis"], history
            )
            if validation.is_valid and validation.adjusted_parameters:
                if int(state.get("attempt", 0)) > 0:
                    print("[Validate] Ignoring history adjustment on a retry")
                    validation = replace(validation, adjusted_parameters=None)
                else:
                    validation, params = _adopt_history_adjustment(
                        proposal.tool_name, validation, state["original_analysis"], history, params
                    )
            phase = decide_after_validation(validation, state.get("attempts", []))
            print(
                f"[Validate] {proposal.tool_name} attempt {state.get('attempt', 0) + 1}: "
                f"{'valid' if validation.is_valid else 'invalid'} (confidence {validation.confidence:.0f})"
            )
            for err in validation.errors:
                print(f"  - {err}")
            for warn in validation.warnings:
                print(f"  ! {warn}")
            return {"validation": validation, "current_parameters": params, "phase": phase.value}
        except Exception as e:
            print(f"[Validate] Error: {e}")
            traceback.print_exc()
            return {"phase": Phase.FAILED.value, "error_message": f"Validation error: {e}", "error_kind": "internal"}

    # -----------------------------------------------------------------------
    # 2. Execute
    # -----------------------------------------------------------------------
    def execute_node(state: GuardState) -> dict:
        """
        Run the gateway against the ORIGINAL image with the validated parameters.

        Writes: result_image, current_parameters, execution_time_ms, attempt, phase
        """
        proposal = state["proposal"]
        params = state.get("current_parameters", proposal.parameters)
        attempt = int(state.get("attempt", 0)) + 1
        start = time.perf_counter()
        try:
            output = gateway(proposal.tool_name, copy.deepcopy(params), state["original_image"])
            if not isinstance(output, (bytes, bytearray)) or not output:
                raise ExecutionError(f"gateway returned no image for {proposal.tool_name}")
        except ExecutionError as e:
            print(f"[Execute] Gateway failed: {e}")
            return {
                "phase": Phase.FAILED.value,
                "attempt": attempt,
                "current_parameters": params,
                "error_message": str(e),
                "error_kind": "execution",
            }
        except Exception as e:
            print(f"[Execute] Gateway error: {e}")
            traceback.print_exc()
            return {
                "phase": Phase.FAILED.value,
                "attempt": attempt,
                "current_parameters": params,
                "error_message": f"Gateway error: {e}",
                "error_kind": "execution",
            }
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        print(f"[Execute] {proposal.tool_name} attempt {attempt} finished in {elapsed_ms:.0f}ms")
        return {
            "result_image": bytes(output),
            "current_parameters": params,
            "execution_time_ms": elapsed_ms,
            "attempt": attempt,
            "phase": Phase.EXECUTING.value,
        }

    # -----------------------------------------------------------------------
    # 3. Check result
    # -----------------------------------------------------------------------
    def check_result_node(state: GuardState) -> dict:
        """Gate 2: pixel comparison against the original image. Never fails."""
        proposal = state["proposal"]
        result = result_validator.validate(
            proposal.tool_name,
            state["original_image"],
            state["result_image"],
            parameters=state.get("current_parameters"),
            before_analysis=state.get("original_analysis"),
        )
        print(
            f"[CheckResult] success={result.success} changed={result.percentage_changed:.1f}% "
            f"quality={result.quality_score:.0f} :: {result.reasoning}"
        )
        return {"result": result, "phase": Phase.VALIDATED.value}

    # -----------------------------------------------------------------------
    # 4. Score
    # -----------------------------------------------------------------------
    def score_node(state: GuardState) -> dict:
        """Combine both gates, decide the next phase and log the attempt."""
        validation = state["validation"]
        result = state["result"]
        confidence = score(validation, result)
        band = confidence_band(confidence)
        attempt = int(state.get("attempt", 1))
        phase = decide_phase(
            result,
            confidence,
            attempt,
            int(_cfg(state, "retry", "max_attempts", default=3)),
            float(_cfg(state, "retry", "acceptance_threshold", default=70)),
        )
        print(f"[Score] attempt {attempt}: confidence {confidence:.0f} ({band}) -> {phase.value}")
        record = AttemptRecord(
            attempt=attempt,
            parameters=copy.deepcopy(state.get("current_parameters", {})),
            phase=phase,
            validation=validation,
            result=result,
            confidence=confidence,
            band=band,
            execution_time_ms=float(state.get("execution_time_ms", 0.0)),
            result_image=state.get("result_image"),
        )
        return {"confidence": confidence, "band": band, "phase": phase.value, "attempts": [record]}

    # -----------------------------------------------------------------------
    # 5. Adjust
    # -----------------------------------------------------------------------
    def adjust_node(state: GuardState) -> dict:
        """Derive the next proposal from the last failure reason."""
        proposal = state["proposal"]
        try:
            new_params, note = derive_adjustment(
                proposal.tool_name,
                state.get("current_parameters", proposal.parameters),
                state["result"],
                state["original_analysis"],
                state.get("guard_config"),
            )
        except Exception as e:
            print(f"[Adjust] Error: {e}")
            traceback.print_exc()
            new_params, note = None, f"adjustment error: {e}"
        if new_params is None:
            print(f"[Adjust] Retrying with unchanged parameters ({note})")
            return {"phase": Phase.VALIDATING.value}
        print(f"[Adjust] {note}")
        return {"current_parameters": new_params, "phase": Phase.VALIDATING.value}

    # -----------------------------------------------------------------------
    # 6. Finalize
    # -----------------------------------------------------------------------
    def finalize_node(state: GuardState) -> dict:
        """Build the GuardOutcome and write exactly one ExecutionRecord."""
        outcome = build_outcome(state)
        record = _execution_record(state, outcome)
        if history is not None:
            try:
                history.add(record)
            except OSError as e:
                print(f"[Finalize] Could not persist history record: {e}")
        outcome.record = record
        print(f"[Finalize] {outcome.summary().splitlines()[0]}")
        return {"outcome": outcome, "reasoning": outcome.reasoning}

    return {
        "validate": validate_node,
        "execute": execute_node,
        "check_result": check_result_node,
        "score": score_node,
        "adjust": adjust_node,
        "finalize": finalize_node,
    }


# ---------------------------------------------------------------------------
# Outcome assembly
# ---------------------------------------------------------------------------

def build_outcome(state: GuardState) -> GuardOutcome:
    proposal = state["proposal"]
    phase = Phase(state.get("phase", Phase.FAILED.value))
    attempts = list(state.get("attempts", []))
    validation = state.get("validation")

    if phase is Phase.REJECTED:
        fix = suggest_fix(proposal.tool_name, state.get("current_parameters"), validation, state["original_analysis"])
        return GuardOutcome(
            proposal=proposal,
            phase=phase,
            confidence=validation.confidence,
            band=confidence_band(validation.confidence),
            reasoning="Rejected before execution: " + "; ".join(validation.errors),
            parameters=_as_dict(state.get("current_parameters")),
            validation=validation,
            attempts=attempts,
            suggested_fix=fix,
        )

    if phase is Phase.FAILED:
        best = best_attempt(attempts)
        return GuardOutcome(
            proposal=proposal,
            phase=phase,
            confidence=0.0,
            band=confidence_band(0.0),
            reasoning=state.get("error_message", "Execution failed"),
            parameters=_as_dict(state.get("current_parameters")),
            validation=validation,
            attempts=attempts,
            best_attempt=best,
            error_kind=state.get("error_kind", "execution"),
        )

    if phase is Phase.ACCEPTED:
        chosen = attempts[-1]
        reasoning = f"Accepted on attempt {chosen.attempt}: {chosen.result.reasoning}"
    else:
        phase = Phase.EXHAUSTED
        chosen = best_attempt(attempts)
        reasoning = f"Exhausted after {len(attempts)} attempt(s)"
        if validation is not None and not validation.is_valid:
            reasoning += "; adjusted proposal rejected: " + "; ".join(validation.errors)
        if chosen is not None:
            reasoning += f"; best was attempt {chosen.attempt}: {chosen.result.reasoning}"

    return GuardOutcome(
        proposal=proposal,
        phase=phase,
        confidence=chosen.confidence if chosen else 0.0,
        band=chosen.band if chosen else confidence_band(0.0),
        reasoning=reasoning,
        parameters=dict(chosen.parameters) if chosen else {},
        result_image=chosen.result_image if chosen else None,
        validation=chosen.validation if chosen else validation,
        result=chosen.result if chosen else None,
        attempts=attempts,
        best_attempt=chosen,
    )


def _execution_record(state: GuardState, outcome: GuardOutcome) -> ExecutionRecord:
    attempt = outcome.best_attempt
    result = outcome.result
    metrics = ResultMetrics(
        pixels_changed=result.pixels_changed if result else 0,
        percentage_changed=result.percentage_changed if result else 0.0,
        quality_score=result.quality_score if result else 0.0,
        execution_time_ms=attempt.execution_time_ms if attempt else 0.0,
    )
    return ExecutionRecord(
        tool_name=outcome.proposal.tool_name,
        parameters=copy.deepcopy(outcome.parameters),
        success=outcome.accepted,
        confidence=outcome.confidence,
        result_metrics=metrics,
        image_snapshot=state["original_analysis"],
        timestamp=time.time(),
        phase=outcome.phase.value,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _cfg(state: GuardState, *keys: str, default: Any = None) -> Any:
    """Read nested config from state['guard_config'] with safe defaults."""
    value: Any = state.get("guard_config", {})
    for key in keys:
        if not isinstance(value, dict):
            return default
        value = value.get(key)
        if value is None:
            return default
    return value


def _as_dict(value: Any) -> dict:
    return dict(value) if isinstance(value, dict) else {}
