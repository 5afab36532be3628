"""
Ground-truth plausibility rules.

Each rule receives schema-valid parameters (defaults filled in) and the
ImageAnalysis of the current image, and reports whether the proposal is
consistent with what is actually in the pixels. Hard errors block
execution; warnings only cap the ground-truth confidence.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ground_truth.color_utils import (
    color_distance,
    delta_e2000,
    parse_hex,
    resolve_color,
    rgb_to_lab,
    tolerance_to_distance,
)
from ground_truth.image_analyzer import DominantColor, ImageAnalysis

from .results import IssueCode, Severity, Stage, ValidationIssue

# Colour existence: <= MATCH accepted, (MATCH, CLOSE] warns, > CLOSE is an error.
MATCH_DISTANCE = 30.0
CLOSE_DISTANCE = 50.0
RARE_COLOR_PCT = 1.0

MAX_OUTPUT_MEGAPIXELS = 16.0
MAX_COVERAGE_PCT = 95.0
LOW_COVERAGE_PCT = 1.0

SPACING_DPI_DEFAULT = 300


@dataclass
class Plausibility:
    confidence: float = 100.0
    issues: List[ValidationIssue] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(i.is_error for i in self.issues)

    def error(self, code: IssueCode, message: str, parameter: str = "", confidence: float = 0.0) -> None:
        self.issues.append(ValidationIssue(code, message, parameter, Severity.ERROR, Stage.GROUND_TRUTH))
        self.confidence = min(self.confidence, confidence)
        self.notes.append(f"ERROR: {message}")

    def warn(self, code: IssueCode, message: str, parameter: str = "", cap: float = 100.0) -> None:
        self.issues.append(ValidationIssue(code, message, parameter, Severity.WARNING, Stage.GROUND_TRUTH))
        self.confidence = min(self.confidence, cap)

    def note(self, text: str) -> None:
        self.notes.append(text)


def nearest_dominant(rgb: Tuple[int, int, int], analysis: ImageAnalysis) -> Tuple[float, Optional[DominantColor]]:
    """Distance to the closest dominant colour (inf if the image has none)."""
    best, best_color = math.inf, None
    for color in analysis.dominant_colors:
        d = color_distance(rgb, color.rgb)
        if d < best:
            best, best_color = d, color
    return best, best_color


def check_color_presence(
    report: Plausibility,
    rgb: Tuple[int, int, int],
    label: str,
    analysis: ImageAnalysis,
    parameter: str,
) -> Optional[DominantColor]:
    """Apply the match/close thresholds to one target colour."""
    distance, nearest = nearest_dominant(rgb, analysis)
    if distance > CLOSE_DISTANCE:
        shown = "n/a" if math.isinf(distance) else f"{distance:.1f}"
        report.error(
            IssueCode.COLOR_NOT_FOUND,
            f"color {label} not found in image, nearest distance {shown}",
            parameter,
        )
        return None
    if distance > MATCH_DISTANCE:
        report.warn(
            IssueCode.WEAK_COLOR_MATCH,
            f"color {label} has a weak match (distance {distance:.1f} to {nearest.hex}); consider adjusting tolerance",
            parameter,
            cap=80,
        )
    elif nearest.pixel_fraction * 100 < RARE_COLOR_PCT:
        report.warn(
            IssueCode.RARE_COLOR,
            f"color {label} is rare in image ({nearest.pixel_fraction * 100:.2f}% of pixels)",
            parameter,
            cap=85,
        )
    report.note(f"Color {label} matches {nearest.hex} (distance {distance:.1f}).")
    return nearest


def _check_tolerance_vs_noise(report: Plausibility, tolerance: float, analysis: ImageAnalysis) -> None:
    if analysis.noise_level > 30 and tolerance < 25:
        report.warn(
            IssueCode.TOLERANCE_MISMATCH,
            f"Image has high noise ({analysis.noise_level:.0f}/100). Tolerance {tolerance:g} may be too strict. Suggest >=25.",
            "tolerance",
            cap=75,
        )
    elif analysis.noise_level < 15 and tolerance > 40:
        report.warn(
            IssueCode.TOLERANCE_MISMATCH,
            f"Image has low noise ({analysis.noise_level:.0f}/100). Tolerance {tolerance:g} may be too loose. Suggest 15-35.",
            "tolerance",
            cap=80,
        )
    else:
        report.note(f"Tolerance {tolerance:g} suits the image noise level ({analysis.noise_level:.0f}/100).")


# ---------------------------------------------------------------------------
# Transparency tools
# ---------------------------------------------------------------------------

def check_color_knockout(params: dict, analysis: ImageAnalysis) -> Plausibility:
    report = Plausibility()
    colors = params.get("colors") or []
    if not colors:
        report.error(IssueCode.MISSING_DETAIL, "No colors specified for knockout", "colors")
        return report

    targets = []
    for idx, color in enumerate(colors):
        path = f"colors[{idx}]"
        rgb = (int(round(color["r"])), int(round(color["g"])), int(round(color["b"])))
        label = color.get("hex", "")
        hex_rgb = parse_hex(label)
        if hex_rgb is None:
            report.error(IssueCode.INVALID_COLOR, f"Invalid hex color {label!r}", f"{path}.hex")
            continue
        if color_distance(hex_rgb, rgb) > 1.0:
            report.warn(
                IssueCode.INVALID_COLOR,
                f"Hex {label} does not match r/g/b {rgb}; using r/g/b",
                path,
                cap=90,
            )
        check_color_presence(report, rgb, "#" + label.strip().lstrip("#").lower(), analysis, path)
        targets.append(rgb)

    if not report.ok:
        return report

    tolerance = float(params.get("tolerance", 30))
    _check_tolerance_vs_noise(report, tolerance, analysis)

    reach = max(MATCH_DISTANCE, tolerance_to_distance(tolerance))
    coverage = estimate_color_coverage(targets, analysis, reach)
    if coverage > MAX_COVERAGE_PCT:
        report.error(
            IssueCode.COVERAGE_LIMIT,
            f"Color knockout would remove {coverage:.1f}% of the image (limit {MAX_COVERAGE_PCT:.0f}%)",
            "colors",
            confidence=20,
        )
        return report
    if coverage < LOW_COVERAGE_PCT and tolerance < 40:
        report.warn(
            IssueCode.LOW_COVERAGE,
            "Colors match <1% of image. Effect may be minimal. Consider increasing tolerance.",
            "tolerance",
            cap=70,
        )
    else:
        report.note(f"Estimated coverage: {coverage:.1f}% of image.")

    if params.get("replaceMode", "transparency") == "transparency" and analysis.format in ("jpeg", "jpg"):
        report.warn(
            IssueCode.INCOMPATIBLE_IMAGE,
            f"Image format {analysis.format} does not store transparency; the result must be saved as PNG",
            "replaceMode",
            cap=90,
        )
    return report


def estimate_color_coverage(targets, analysis: ImageAnalysis, reach: float) -> float:
    """Percentage of pixels whose dominant colour lies within `reach` of any target."""
    total = 0.0
    for color in analysis.dominant_colors:
        if any(color_distance(t, color.rgb) <= reach for t in targets):
            total += color.pixel_fraction
    return total * 100.0


def check_background_remover(params: dict, analysis: ImageAnalysis) -> Plausibility:
    report = Plausibility()
    bg = params.get("backgroundColor")
    if bg is not None and parse_hex(bg) is None:
        report.error(IssueCode.INVALID_COLOR, f"Invalid backgroundColor {bg!r}, expected a hex color", "backgroundColor")
        return report

    if analysis.megapixels > 12:
        report.warn(
            IssueCode.QUALITY_RISK,
            f"Large image ({analysis.megapixels:.1f}MP) may take longer to process. Consider resizing first.",
            cap=90,
        )
    top = analysis.dominant_colors[0].pixel_fraction if analysis.dominant_colors else 0.0
    if analysis.unique_color_count > 50000 and top < 0.2:
        report.warn(
            IssueCode.QUALITY_RISK,
            "Complex colour distribution; subject and background may be hard to separate",
            cap=85,
        )
    if analysis.has_transparency:
        report.warn(
            IssueCode.INCOMPATIBLE_IMAGE,
            "Image already has transparency. Background removal may have unexpected results.",
            cap=80,
        )
    report.note(f"Background removal with model {params.get('model', 'bria')}.")
    return report


def check_texture_cut(params: dict, analysis: ImageAnalysis) -> Plausibility:
    report = Plausibility()
    if params.get("textureType") == "custom":
        report.error(
            IssueCode.UNSUPPORTED_OPTION,
            "Custom texture requires a user upload. Use dots, lines, grid or noise instead.",
            "textureType",
        )
        return report

    amount = float(params.get("amount", 0.5))
    coverage = amount * 100.0
    if coverage > MAX_COVERAGE_PCT:
        report.error(
            IssueCode.COVERAGE_LIMIT,
            f"Texture cut amount {amount:g} would remove ~{coverage:.0f}% of the image (limit {MAX_COVERAGE_PCT:.0f}%)",
            "amount",
            confidence=20,
        )
        return report
    if amount < 0.1:
        report.warn(IssueCode.LOW_COVERAGE, f"Amount {amount:g} is very low. Effect may be barely visible. Consider >=0.2.", "amount", cap=80)
    elif amount > 0.9:
        report.warn(IssueCode.QUALITY_RISK, f"Amount {amount:g} is very high. May cut too much of the image. Consider <=0.8.", "amount", cap=85)

    scale = float(params.get("scale", 1))
    size = max(analysis.width, analysis.height)
    if scale < 0.5 and size > 2000:
        report.warn(IssueCode.QUALITY_RISK, f"Scale {scale:g} may be too small for a {size}px image; texture will look dense.", "scale", cap=85)
    elif scale > 3 and size < 500:
        report.warn(IssueCode.QUALITY_RISK, f"Scale {scale:g} may be too large for a {size}px image; texture will look coarse.", "scale", cap=85)

    report.note(f"Texture {params.get('textureType')} at {coverage:.0f}% intensity, scale {scale:g}x.")
    return report


# ---------------------------------------------------------------------------
# Colour remap
# ---------------------------------------------------------------------------

def check_recolor_image(params: dict, analysis: ImageAnalysis) -> Plausibility:
    report = Plausibility()
    mappings = params.get("colorMappings") or []
    if not mappings:
        report.error(IssueCode.MISSING_DETAIL, "No color mappings specified", "colorMappings")
        return report

    palette = analysis.dominant_colors
    if len(mappings) > len(palette):
        report.warn(
            IssueCode.QUALITY_RISK,
            f"Mapping count ({len(mappings)}) exceeds dominant color count ({len(palette)}). Some mappings may not match any pixels.",
            "colorMappings",
            cap=80,
        )

    for idx, mapping in enumerate(mappings):
        path = f"colorMappings[{idx}]"
        index = mapping["originalIndex"]
        if index != int(index) or not 0 <= int(index) < len(palette):
            report.error(
                IssueCode.INVALID_INDEX,
                f"Invalid originalIndex {index:g}. Must be 0-{len(palette) - 1} (palette has {len(palette)} colors).",
                f"{path}.originalIndex",
            )
            continue
        new_rgb = parse_hex(mapping["newColor"])
        if new_rgb is None:
            report.error(IssueCode.INVALID_COLOR, f"Invalid newColor {mapping['newColor']!r}", f"{path}.newColor")
            continue
        original = palette[int(index)]
        delta = delta_e2000(rgb_to_lab(original.rgb), rgb_to_lab(new_rgb))
        if delta < 5:
            report.warn(
                IssueCode.QUALITY_RISK,
                f"Color mapping {int(index)}: new color {mapping['newColor']} is very similar to {original.hex} (dE {delta:.1f}). Effect may be imperceptible.",
                path,
                cap=75,
            )
        report.note(f"Mapping {int(index)}: {original.hex} -> {mapping['newColor']} (dE {delta:.1f})")

    if not report.ok:
        return report

    tolerance = float(params.get("tolerance", 30))
    if analysis.unique_color_count > 10000 and tolerance < 20:
        report.warn(
            IssueCode.TOLERANCE_MISMATCH,
            f"Image has high color complexity ({analysis.unique_color_count} unique colors). Tolerance {tolerance:g} may miss many pixels. Suggest >=20.",
            "tolerance",
            cap=75,
        )
    elif analysis.unique_color_count < 1000 and tolerance > 40:
        report.warn(
            IssueCode.TOLERANCE_MISMATCH,
            f"Image has low color complexity ({analysis.unique_color_count} unique colors). Tolerance {tolerance:g} may affect unintended colors. Suggest <=35.",
            "tolerance",
            cap=80,
        )
    if params.get("blendMode") == "multiply":
        report.warn(IssueCode.QUALITY_RISK, "Multiply blend mode may darken the image considerably.", "blendMode", cap=90)
    return report


# ---------------------------------------------------------------------------
# Resolution and structural tools
# ---------------------------------------------------------------------------

def _size_limit_error(report: Plausibility, width: int, height: int, parameter: str, hint: str = "") -> bool:
    megapixels = width * height / 1_000_000
    if megapixels > MAX_OUTPUT_MEGAPIXELS:
        report.error(
            IssueCode.SIZE_LIMIT,
            f"Output size {megapixels:.1f}MP ({width}x{height}) exceeds maximum {MAX_OUTPUT_MEGAPIXELS:.0f}MP.{hint}",
            parameter,
        )
        return True
    return False


def check_upscaler(params: dict, analysis: ImageAnalysis) -> Plausibility:
    report = Plausibility()
    scale = float(params["scaleFactor"])
    out_w, out_h = int(round(analysis.width * scale)), int(round(analysis.height * scale))
    max_scale = math.sqrt(MAX_OUTPUT_MEGAPIXELS * 1_000_000 / max(1, analysis.pixel_count))
    hint = f" Reduce scale factor to <={math.floor(max_scale * 10) / 10:g}x." if max_scale >= 1 else " The source is already too large to upscale."
    if _size_limit_error(report, out_w, out_h, "scaleFactor", hint):
        return report
    if scale <= 1:
        report.warn(IssueCode.QUALITY_RISK, "Scale factor 1 does not change the resolution.", "scaleFactor", cap=70)
    if scale > 4 and analysis.width < 500:
        report.warn(
            IssueCode.QUALITY_RISK,
            f"{scale:g}x upscaling of a small image ({analysis.width}px) may introduce artifacts. Consider 2-4x instead.",
            "scaleFactor",
            cap=75,
        )
    if analysis.sharpness < 40:
        report.warn(
            IssueCode.QUALITY_RISK,
            f"Image has low sharpness ({analysis.sharpness:.0f}/100). Upscaling blurry images may not improve quality.",
            cap=70,
        )
    if analysis.noise_level > 50:
        report.warn(
            IssueCode.QUALITY_RISK,
            f"Image has high noise level ({analysis.noise_level:.0f}/100). Upscaling may amplify noise.",
            cap=80,
        )
    report.note(f"Upscale {scale:g}x to {out_w}x{out_h} ({out_w * out_h / 1_000_000:.1f}MP).")
    return report


def smart_resize_target(params: dict, width: int, height: int) -> Optional[Tuple[int, int]]:
    """Target dimensions of a smart_resize call, or None if underspecified."""
    req_w, req_h = params.get("width"), params.get("height")
    if req_w is None and req_h is None:
        return None
    if params.get("unit", "px") == "percent":
        pct_w = req_w if req_w is not None else req_h
        pct_h = req_h if req_h is not None else req_w
        if params.get("maintainAspectRatio", True):
            pct_h = pct_w
        return int(round(width * pct_w / 100)), int(round(height * pct_h / 100))
    if req_w is not None and req_h is not None:
        if params.get("maintainAspectRatio", True):
            ratio = min(req_w / width, req_h / height)
            return int(round(width * ratio)), int(round(height * ratio))
        return int(round(req_w)), int(round(req_h))
    if req_w is not None:
        return int(round(req_w)), int(round(height * req_w / width))
    return int(round(width * req_h / height)), int(round(req_h))


def rotate_flip_target(params: dict, width: int, height: int) -> Tuple[int, int]:
    operation = params.get("operation") or {}
    if operation.get("type") == "rotate" and abs(int(operation.get("angle", 0))) in (90, 270):
        return height, width
    return width, height


def check_smart_resize(params: dict, analysis: ImageAnalysis) -> Plausibility:
    report = Plausibility()
    target = smart_resize_target(params, analysis.width, analysis.height)
    if target is None:
        report.error(IssueCode.MISSING_DETAIL, "smart_resize needs a width or a height", "width")
        return report
    out_w, out_h = target
    if out_w < 1 or out_h < 1:
        report.error(IssueCode.OUT_OF_IMAGE, f"Resize target {out_w}x{out_h} has no pixels", "width")
        return report
    if _size_limit_error(report, out_w, out_h, "width"):
        return report
    if out_w * out_h > analysis.pixel_count:
        report.warn(
            IssueCode.QUALITY_RISK,
            f"Resizing up to {out_w}x{out_h} interpolates pixels; quality degrades. Consider the upscaler instead.",
            cap=80,
        )
    if (out_w, out_h) == (analysis.width, analysis.height):
        report.warn(IssueCode.QUALITY_RISK, "Resize target equals the current size.", "width", cap=70)
    report.note(f"Resize {analysis.width}x{analysis.height} -> {out_w}x{out_h}.")
    return report


def check_rotate_flip(params: dict, analysis: ImageAnalysis) -> Plausibility:
    report = Plausibility()
    operation = params.get("operation") or {}
    kind = operation.get("type")
    if kind == "rotate" and operation.get("angle") is None:
        report.error(IssueCode.MISSING_DETAIL, "Rotate operation needs an angle", "operation.angle")
    elif kind == "flip" and operation.get("direction") is None:
        report.error(IssueCode.MISSING_DETAIL, "Flip operation needs a direction", "operation.direction")
    else:
        report.note(f"{kind} {operation.get('angle', operation.get('direction'))}")
    return report


def auto_crop_background(params: dict):
    """'auto', 'transparent' or an RGB tuple; None when unresolvable."""
    value = str(params.get("backgroundColor", "white")).strip().lower()
    if value in ("auto", "transparent"):
        return value
    return resolve_color(value)


def check_auto_crop(params: dict, analysis: ImageAnalysis) -> Plausibility:
    report = Plausibility()
    background = auto_crop_background(params)
    if background is None:
        report.error(
            IssueCode.INVALID_COLOR,
            f"Unknown backgroundColor {params.get('backgroundColor')!r}; use a color name, hex, 'auto' or 'transparent'",
            "backgroundColor",
        )
        return report
    if background == "transparent" and not analysis.has_transparency:
        report.error(
            IssueCode.INCOMPATIBLE_IMAGE,
            "Image has no transparent pixels to trim",
            "backgroundColor",
        )
        return report
    if isinstance(background, tuple):
        distance, _ = nearest_dominant(background, analysis)
        if distance > CLOSE_DISTANCE:
            report.warn(
                IssueCode.WEAK_COLOR_MATCH,
                f"Background {params.get('backgroundColor')} is not among the image colors; there may be nothing to trim",
                "backgroundColor",
                cap=60,
            )

    padding = float(params.get("minPadding", 0))
    if padding * 2 >= min(analysis.width, analysis.height):
        report.warn(IssueCode.QUALITY_RISK, f"minPadding {padding:g}px is larger than the image allows; nothing may be trimmed.", "minPadding", cap=75)
    return report


def spacing_in_pixels(params: dict) -> float:
    spacing = float(params.get("spacing", 0))
    if params.get("unit", "px") == "inches":
        return spacing * float(params.get("dpi", SPACING_DPI_DEFAULT))
    return spacing


def check_crop_with_spacing(params: dict, analysis: ImageAnalysis) -> Plausibility:
    report = Plausibility()
    pad = spacing_in_pixels(params)
    out_w = int(round(analysis.width + 2 * pad))
    out_h = int(round(analysis.height + 2 * pad))
    if _size_limit_error(report, out_w, out_h, "spacing"):
        return report
    if pad * 2 >= max(analysis.width, analysis.height):
        report.warn(
            IssueCode.QUALITY_RISK,
            f"Spacing of {pad:.0f}px is large relative to a {analysis.width}x{analysis.height} image.",
            "spacing",
            cap=80,
        )
    report.note(f"Crop to content with {pad:.0f}px spacing.")
    return report


# ---------------------------------------------------------------------------
# Info-only tools
# ---------------------------------------------------------------------------

def check_extract_color_palette(params: dict, analysis: ImageAnalysis) -> Plausibility:
    report = Plausibility()
    size = params.get("paletteSize", 9)
    if size == 36 and analysis.unique_color_count < 100:
        report.warn(
            IssueCode.QUALITY_RISK,
            f"Palette size 36 may be excessive for a simple image with ~{analysis.unique_color_count} unique colors. Consider 9.",
            "paletteSize",
            cap=85,
        )
    report.note(f"Palette of {size:g} colors from ~{analysis.unique_color_count} unique colors.")
    return report


def check_pick_color_at_position(params: dict, analysis: ImageAnalysis) -> Plausibility:
    report = Plausibility()
    x, y = params["x"], params["y"]
    if not 0 <= x < analysis.width:
        report.error(IssueCode.OUT_OF_IMAGE, f"X coordinate {x:g} is outside image bounds (0-{analysis.width - 1})", "x")
    if not 0 <= y < analysis.height:
        report.error(IssueCode.OUT_OF_IMAGE, f"Y coordinate {y:g} is outside image bounds (0-{analysis.height - 1})", "y")
    if report.ok:
        report.note(f"Picking color at ({x:g}, {y:g}) within {analysis.width}x{analysis.height}.")
    return report
