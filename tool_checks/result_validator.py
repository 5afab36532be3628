"""
Post-execution result validation (gate 2).

Compares the before and after images pixel by pixel, applies the tool's
expected-operation profile and produces a quality score. Never raises:
any internal failure is returned as an unsuccessful, zeroed verdict.
"""

from __future__ import annotations

import math
import traceback
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from ground_truth.image_analyzer import DecodedImage, ImageAnalysis, analyze_decoded, decode_image
from guardrail.errors import AnalysisError

from .registry import DimensionRule, ExpectedOperationProfile, OperationKind, get_tool
from .results import MismatchKind, ResultValidation, VisualDifference

# A pixel counts as changed when its RGBA distance exceeds this
# (ignores lossy-compression noise, not real colour differences).
CHANGE_THRESHOLD = 10.0
SIGNIFICANT_CHANGE_PCT = 1.0
MAX_EXACT_PIXELS = 4_000_000

# Target-size matching
TARGET_TOLERANCE_PX = 1
TARGET_TOLERANCE_FRACTION = 0.02

# Quality score adjustments
SHARPNESS_DROP = 10.0
NOISE_RISE = 10.0
SHARPNESS_PENALTY = 15.0
NOISE_PENALTY = 10.0
NO_CHANGE_PENALTY = 20.0
PRINT_READY_BONUS = 10.0

# File-size sanity
MAX_SIZE_GROWTH = 3.0           # bytes per pixel, after / before
SIZE_GROWTH_PENALTY = 10.0
MIN_RESULT_BYTES = 100
MIN_RESULT_SHRINK = 10          # a too-small result must also be this many times smaller than its input


@dataclass
class PixelComparison:
    pixels_changed: int
    total_pixels: int
    percentage_changed: float
    max_delta: float
    avg_delta: float
    color_shift_amount: float
    sample_stride: int = 1


def compare_pixels(before: np.ndarray, after: np.ndarray) -> PixelComparison:
    """
    Per-pixel RGBA Euclidean comparison.

    Images of different size are compared on their overlapping top-left
    region; pixels present in only one of them count as changed. Overlaps
    above MAX_EXACT_PIXELS are sampled on a regular grid and the counts are
    scaled back to the full overlap.
    """
    bh, bw = before.shape[:2]
    ah, aw = after.shape[:2]
    oh, ow = min(bh, ah), min(bw, aw)
    overlap = oh * ow
    union = bh * bw + ah * aw - overlap

    stride = 1
    if overlap > MAX_EXACT_PIXELS:
        stride = int(math.ceil(math.sqrt(overlap / MAX_EXACT_PIXELS)))
    b = before[:oh:stride, :ow:stride].astype(np.int32)
    a = after[:oh:stride, :ow:stride].astype(np.int32)

    diff = a - b
    sq = diff * diff
    delta = np.sqrt(sq.sum(axis=2, dtype=np.float64))
    changed = delta > CHANGE_THRESHOLD
    sampled = int(changed.sum())

    if sampled:
        changed_delta = delta[changed]
        max_delta = float(changed_delta.max())
        avg_delta = float(changed_delta.mean())
        color_shift = float(np.sqrt(sq[..., :3].sum(axis=2, dtype=np.float64))[changed].mean())
    else:
        max_delta = avg_delta = color_shift = 0.0

    changed_in_overlap = int(round(sampled * overlap / max(1, changed.size)))
    pixels_changed = min(union, changed_in_overlap + (union - overlap))
    percentage = pixels_changed / union * 100.0 if union else 0.0

    return PixelComparison(
        pixels_changed=pixels_changed,
        total_pixels=union,
        percentage_changed=percentage,
        max_delta=max_delta,
        avg_delta=avg_delta,
        color_shift_amount=color_shift,
        sample_stride=stride,
    )


def quality_score(
    before: ImageAnalysis,
    after: ImageAnalysis,
    significant_change: bool,
    info_only: bool,
) -> float:
    """After-image confidence adjusted by sharpness, noise, change and print readiness."""
    score = after.confidence
    if after.sharpness < before.sharpness - SHARPNESS_DROP:
        score -= SHARPNESS_PENALTY
    if after.noise_level > before.noise_level + NOISE_RISE:
        score -= NOISE_PENALTY
    if after.is_print_ready and not before.is_print_ready:
        score += PRINT_READY_BONUS
    if not significant_change and not info_only:
        score -= NO_CHANGE_PENALTY
    return max(0.0, min(100.0, score))


def size_growth(before: DecodedImage, after: DecodedImage) -> float:
    """Ratio of encoded bytes per pixel, after over before."""
    before_px = max(1, before.pixels.shape[0] * before.pixels.shape[1])
    after_px = max(1, after.pixels.shape[0] * after.pixels.shape[1])
    return (after.file_size / after_px) / max(1e-9, before.file_size / before_px)


def _within(actual: int, target: int) -> bool:
    return abs(actual - target) <= max(TARGET_TOLERANCE_PX, TARGET_TOLERANCE_FRACTION * target)


def _dimension_verdict(
    rule: DimensionRule,
    before_size: Tuple[int, int],
    after_size: Tuple[int, int],
    target: Optional[Tuple[int, int]],
) -> Tuple[Optional[MismatchKind], str]:
    """(mismatch or None, explanation) for the tool's dimension rule."""
    (bw, bh), (aw, ah) = before_size, after_size
    same = before_size == after_size
    desc = f"{bw}x{bh} -> {aw}x{ah}"

    if rule is DimensionRule.LARGER:
        if same:
            return MismatchKind.DIMENSIONS_UNCHANGED, f"Dimensions unchanged ({bw}x{bh}); expected an increase"
        if aw < bw or ah < bh:
            return MismatchKind.DIMENSIONS_MISMATCH, f"Dimensions shrank ({desc}); expected an increase"
        return None, f"Dimensions increased ({desc}, {aw / bw:.2f}x)"
    if rule is DimensionRule.SMALLER:
        if same:
            return MismatchKind.DIMENSIONS_UNCHANGED, f"Dimensions unchanged ({bw}x{bh}); expected a crop"
        if aw > bw or ah > bh:
            return MismatchKind.DIMENSIONS_MISMATCH, f"Dimensions grew ({desc}); expected a crop"
        return None, f"Cropped {desc}"
    if rule is DimensionRule.CHANGED:
        if same:
            return MismatchKind.DIMENSIONS_UNCHANGED, f"Dimensions unchanged ({bw}x{bh})"
        return None, f"Dimensions changed {desc}"
    if rule is DimensionRule.TARGET:
        if target is None:
            return None, f"No declared target size; dimensions {desc}"
        tw, th = target
        if not (_within(aw, tw) and _within(ah, th)):
            return MismatchKind.DIMENSIONS_MISMATCH, f"Result is {aw}x{ah}, expected {tw}x{th}"
        return None, f"Dimensions match target {tw}x{th}"
    return None, f"Dimensions {desc}"


def validate(
    tool_name: str,
    before: bytes,
    after: bytes,
    expected_profile: Optional[ExpectedOperationProfile] = None,
    parameters: Optional[dict] = None,
    before_analysis: Optional[ImageAnalysis] = None,
) -> ResultValidation:
    """
    Validate an executed edit.

    Args:
        tool_name: Tool that produced `after` from `before`.
        before: Encoded input image.
        after: Encoded output image.
        expected_profile: Overrides the registry profile for the tool.
        parameters: Parameters the tool ran with (selects profile variants
                    and target sizes).
        before_analysis: Reuse an existing analysis of `before`.

    Returns:
        ResultValidation. Never raises.
    """
    try:
        return _validate(tool_name, before, after, expected_profile, parameters, before_analysis)
    except AnalysisError as e:
        return ResultValidation.failure(f"Image decode failed: {e}", MismatchKind.DECODE_ERROR)
    except Exception as e:
        print(f"[ResultValidator] Comparison failed for {tool_name}: {e}")
        traceback.print_exc()
        return ResultValidation.failure(f"Result validation failed: {e}", MismatchKind.INTERNAL_ERROR)


def _validate(tool_name, before, after, expected_profile, parameters, before_analysis) -> ResultValidation:
    spec = get_tool(tool_name)
    profile = expected_profile
    if profile is None and spec is not None:
        profile = spec.profile_for(parameters)
    if profile is None:
        return ResultValidation.failure(f"No expected-operation profile for unknown tool '{tool_name}'")

    before_dec = decode_image(before)
    after_dec = decode_image(after)
    if before_analysis is None:
        before_analysis = analyze_decoded(before_dec)
    after_analysis = analyze_decoded(after_dec)

    comparison = compare_pixels(before_dec.pixels, after_dec.pixels)
    significant = comparison.percentage_changed >= SIGNIFICANT_CHANGE_PCT
    quality = quality_score(before_analysis, after_analysis, significant, profile.is_info_only)

    before_size = (before_analysis.width, before_analysis.height)
    after_size = (after_analysis.width, after_analysis.height)
    warnings: List[str] = []
    if comparison.sample_stride > 1:
        warnings.append(f"Compared every {comparison.sample_stride}th pixel in each axis")

    def verdict(success: bool, reasoning: str, mismatch: Optional[MismatchKind] = None) -> ResultValidation:
        if success and comparison.pixels_changed == 0 and not profile.is_info_only:
            success, mismatch = False, MismatchKind.NO_CHANGE
            reasoning = "No pixels changed"
        return ResultValidation(
            success=success,
            pixels_changed=comparison.pixels_changed,
            percentage_changed=comparison.percentage_changed,
            significant_change=significant,
            quality_score=quality,
            visual_difference=VisualDifference(
                max_delta=comparison.max_delta,
                avg_delta=comparison.avg_delta,
                color_shift_amount=comparison.color_shift_amount,
            ),
            warnings=warnings,
            reasoning=reasoning,
            mismatch=None if success else mismatch,
            before_size=before_size,
            after_size=after_size,
        )

    if profile.is_info_only:
        return verdict(True, "Info-only tool; no image modification expected")

    # 0. File size
    if after_dec.file_size < MIN_RESULT_BYTES and after_dec.file_size * MIN_RESULT_SHRINK <= before_dec.file_size:
        return verdict(
            False,
            f"Result file too small ({after_dec.file_size} bytes from a {before_dec.file_size} byte input), "
            "possible corruption",
            MismatchKind.DECODE_ERROR,
        )
    growth = size_growth(before_dec, after_dec)
    if growth > MAX_SIZE_GROWTH:
        quality = max(0.0, quality - SIZE_GROWTH_PENALTY)
        warnings.append(
            f"File size per pixel increased {growth:.1f}x "
            f"({before_dec.file_size / 1024:.0f}KB -> {after_dec.file_size / 1024:.0f}KB)"
        )

    # 1. Dimensions
    target = None
    if profile.dimension_rule is DimensionRule.TARGET and spec is not None and spec.target_size and parameters is not None:
        target = spec.target_size(spec.schema.with_defaults(parameters), *before_size)
    if profile.expects_dimension_change:
        mismatch, explanation = _dimension_verdict(profile.dimension_rule, before_size, after_size, target)
        if mismatch is not None:
            return verdict(False, explanation, mismatch)
    elif before_size != after_size:
        if profile.kind is OperationKind.COLOR_REMAP:
            return verdict(
                False,
                f"Dimensions changed {before_size[0]}x{before_size[1]} -> {after_size[0]}x{after_size[1]}; expected unchanged",
                MismatchKind.DIMENSIONS_MISMATCH,
            )
        warnings.append(
            f"Dimensions changed unexpectedly ({before_size[0]}x{before_size[1]} -> "
            f"{after_size[0]}x{after_size[1]}); compared the overlapping region"
        )
        explanation = "Dimensions changed"
    else:
        explanation = "Dimensions unchanged"

    # 2. Change must exist
    pct = comparison.percentage_changed
    if comparison.pixels_changed == 0:
        return verdict(False, "No pixels changed", MismatchKind.NO_CHANGE)

    # 3. Tool-category rules
    if profile.requires_transparency and not after_analysis.has_transparency:
        return verdict(
            False,
            f"Result has no transparency ({pct:.1f}% of pixels changed)",
            MismatchKind.MISSING_TRANSPARENCY,
        )

    if profile.kind in (OperationKind.TRANSPARENCY, OperationKind.COLOR_REMAP):
        low, high, margin = profile.min_change_pct, profile.max_change_pct, profile.borderline_margin
        if pct < low:
            if pct < low - margin:
                return verdict(
                    False,
                    f"No meaningful change: only {pct:.2f}% of pixels changed (expected >= {low:g}%)",
                    MismatchKind.NO_CHANGE,
                )
            warnings.append(f"Only {pct:.2f}% of pixels changed, just under the expected {low:g}%")
        elif pct > high:
            if pct > high + margin:
                return verdict(
                    False,
                    f"Over-destructive: {pct:.1f}% of pixels changed (expected <= {high:g}%), likely wrong target",
                    MismatchKind.OVER_DESTRUCTIVE,
                )
            warnings.append(f"{pct:.1f}% of pixels changed, just over the expected {high:g}%")

    if profile.kind is OperationKind.RESOLUTION and after_analysis.sharpness < before_analysis.sharpness - SHARPNESS_DROP:
        warnings.append(
            f"Sharpness decreased from {before_analysis.sharpness:.0f} to {after_analysis.sharpness:.0f}"
        )
    if after_analysis.noise_level > before_analysis.noise_level + NOISE_RISE:
        warnings.append(
            f"Noise increased from {before_analysis.noise_level:.0f} to {after_analysis.noise_level:.0f}"
        )

    reasoning = {
        OperationKind.TRANSPARENCY: f"Introduced transparency ({pct:.1f}% of pixels affected)",
        OperationKind.COLOR_REMAP: f"Recolored {pct:.1f}% of pixels (avg color shift {comparison.color_shift_amount:.0f})",
        OperationKind.RESOLUTION: f"{explanation}; quality {quality:.0f}",
        OperationKind.STRUCTURAL: f"{explanation} ({pct:.1f}% of pixels changed)",
    }[profile.kind]
    return verdict(True, reasoning)


def format_result_summary(result: ResultValidation) -> str:
    """Human-readable summary of a result validation."""
    diff = result.visual_difference
    lines = [
        "=== RESULT VALIDATION ===",
        f"Status: {'SUCCESS' if result.success else 'FAILED'}",
        f"Quality score: {result.quality_score:.0f}/100",
        f"Pixels changed: {result.pixels_changed:,} ({result.percentage_changed:.2f}%)",
        f"Significant change: {'Yes' if result.significant_change else 'No'}",
        f"Size: {result.before_size[0]}x{result.before_size[1]} -> {result.after_size[0]}x{result.after_size[1]}",
        f"Visual difference: max {diff.max_delta:.1f}, avg {diff.avg_delta:.1f}, color shift {diff.color_shift_amount:.1f}",
        f"Reasoning: {result.reasoning}",
    ]
    if result.mismatch is not None:
        lines.append(f"Mismatch: {result.mismatch.value}")
    for warning in result.warnings:
        lines.append(f"  ! {warning}")
    return "\n".join(lines)
