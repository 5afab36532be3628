"""
Tool registry: one entry per known tool.

Each ToolSpec bundles the parameter schema shown to the model, the
ground-truth plausibility rule, and the expected-operation profile the
result validator judges the outcome against. Tables are module-level and
read-only after import.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ground_truth.image_analyzer import ImageAnalysis

from . import plausibility as rules
from .schema import ParamSpec, ToolSchema


class OperationKind(str, Enum):
    TRANSPARENCY = "transparency"
    COLOR_REMAP = "color_remap"
    RESOLUTION = "resolution"
    STRUCTURAL = "structural"
    INFO_ONLY = "info_only"


class DimensionRule(str, Enum):
    UNCHANGED = "unchanged"
    LARGER = "larger"       # strictly larger in at least one axis, never smaller
    SMALLER = "smaller"     # smaller in at least one axis, never larger
    CHANGED = "changed"
    TARGET = "target"       # must match ToolSpec.target_size
    ANY = "any"


@dataclass(frozen=True)
class ExpectedOperationProfile:
    kind: OperationKind
    min_change_pct: float = 0.0
    max_change_pct: float = 100.0
    requires_transparency: bool = False
    dimension_rule: DimensionRule = DimensionRule.UNCHANGED
    borderline_margin: float = 0.5      # percentage points outside the band that only warn

    @property
    def is_info_only(self) -> bool:
        return self.kind is OperationKind.INFO_ONLY

    @property
    def expects_dimension_change(self) -> bool:
        return self.dimension_rule in (
            DimensionRule.LARGER,
            DimensionRule.SMALLER,
            DimensionRule.CHANGED,
            DimensionRule.TARGET,
        )


PlausibilityRule = Callable[[dict, ImageAnalysis], rules.Plausibility]
TargetSize = Callable[[dict, int, int], Optional[Tuple[int, int]]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    schema: ToolSchema
    plausibility: PlausibilityRule
    profile: ExpectedOperationProfile
    profile_selector: Optional[Callable[[dict], ExpectedOperationProfile]] = None
    target_size: Optional[TargetSize] = None
    description: str = ""

    def profile_for(self, parameters: Optional[dict] = None) -> ExpectedOperationProfile:
        if self.profile_selector is not None and parameters is not None:
            return self.profile_selector(self.schema.with_defaults(parameters))
        return self.profile


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

KNOCKOUT_PROFILE = ExpectedOperationProfile(OperationKind.TRANSPARENCY, 1.0, 95.0, True)
KNOCKOUT_REPLACE_PROFILE = ExpectedOperationProfile(OperationKind.COLOR_REMAP, 1.0, 95.0, False)
KNOCKOUT_MASK_PROFILE = ExpectedOperationProfile(OperationKind.COLOR_REMAP, 1.0, 100.0, False)
BACKGROUND_PROFILE = ExpectedOperationProfile(OperationKind.TRANSPARENCY, 10.0, 95.0, True, borderline_margin=2.0)
BACKGROUND_FILL_PROFILE = ExpectedOperationProfile(OperationKind.COLOR_REMAP, 10.0, 95.0, False, borderline_margin=2.0)
TEXTURE_PROFILE = ExpectedOperationProfile(OperationKind.TRANSPARENCY, 5.0, 95.0, True, borderline_margin=1.0)
RECOLOR_PROFILE = ExpectedOperationProfile(OperationKind.COLOR_REMAP, 5.0, 95.0, False, borderline_margin=5.0)
UPSCALE_PROFILE = ExpectedOperationProfile(OperationKind.RESOLUTION, dimension_rule=DimensionRule.LARGER)
AUTO_CROP_PROFILE = ExpectedOperationProfile(OperationKind.STRUCTURAL, dimension_rule=DimensionRule.SMALLER)
SPACING_CROP_PROFILE = ExpectedOperationProfile(OperationKind.STRUCTURAL, dimension_rule=DimensionRule.CHANGED)
TARGET_PROFILE = ExpectedOperationProfile(OperationKind.STRUCTURAL, dimension_rule=DimensionRule.TARGET)
INFO_PROFILE = ExpectedOperationProfile(OperationKind.INFO_ONLY, dimension_rule=DimensionRule.ANY)


def _knockout_profile(params: dict) -> ExpectedOperationProfile:
    mode = params.get("replaceMode", "transparency")
    if mode == "color":
        return KNOCKOUT_REPLACE_PROFILE
    if mode == "mask":
        return KNOCKOUT_MASK_PROFILE
    return KNOCKOUT_PROFILE


def _background_profile(params: dict) -> ExpectedOperationProfile:
    return BACKGROUND_FILL_PROFILE if params.get("backgroundColor") else BACKGROUND_PROFILE


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

_CHANNEL = ParamSpec("number", minimum=0, maximum=255)

_COLOR_ITEM = ParamSpec(
    "object",
    fields={"hex": ParamSpec("string"), "r": _CHANNEL, "g": _CHANNEL, "b": _CHANNEL},
    required_fields=("hex", "r", "g", "b"),
)

_MAPPING_ITEM = ParamSpec(
    "object",
    fields={"originalIndex": ParamSpec("number", minimum=0), "newColor": ParamSpec("string")},
    required_fields=("originalIndex", "newColor"),
)

_ROTATE_FLIP_OPERATION = ParamSpec(
    "object",
    fields={
        "type": ParamSpec("string", enum=("rotate", "flip")),
        "angle": ParamSpec("number", enum=(90, 180, 270, -90, -180, -270)),
        "direction": ParamSpec("string", enum=("horizontal", "vertical")),
    },
    required_fields=("type",),
)


def _build_registry() -> Dict[str, ToolSpec]:
    specs = [
        ToolSpec(
            name="color_knockout",
            description="Remove specific colors with adjustable tolerance",
            schema=ToolSchema(
                properties={
                    "colors": ParamSpec("array", items=_COLOR_ITEM),
                    "tolerance": ParamSpec("number", minimum=0, maximum=100, default=30),
                    "replaceMode": ParamSpec("string", enum=("transparency", "color", "mask"), default="transparency"),
                    "feather": ParamSpec("number", minimum=0, maximum=20, default=0),
                    "antiAliasing": ParamSpec("boolean", default=True),
                },
                required=("colors",),
            ),
            plausibility=rules.check_color_knockout,
            profile=KNOCKOUT_PROFILE,
            profile_selector=_knockout_profile,
        ),
        ToolSpec(
            name="background_remover",
            description="Remove the background with a segmentation model",
            schema=ToolSchema(
                properties={
                    "model": ParamSpec("string", enum=("bria", "codeplugtech", "fallback"), default="bria"),
                    "outputFormat": ParamSpec("string", enum=("png", "webp"), default="png"),
                    "backgroundColor": ParamSpec("string"),
                },
            ),
            plausibility=rules.check_background_remover,
            profile=BACKGROUND_PROFILE,
            profile_selector=_background_profile,
        ),
        ToolSpec(
            name="texture_cut",
            description="Cut the image to transparent through a texture mask",
            schema=ToolSchema(
                properties={
                    "textureType": ParamSpec("string", enum=("dots", "lines", "grid", "noise", "custom"), default="noise"),
                    "invert": ParamSpec("boolean", default=False),
                    "amount": ParamSpec("number", minimum=0, maximum=1, default=0.5),
                    "scale": ParamSpec("number", minimum=0.1, maximum=5, default=1),
                    "rotation": ParamSpec("number", minimum=0, maximum=360, default=0),
                    "tile": ParamSpec("boolean", default=False),
                },
                required=("textureType",),
            ),
            plausibility=rules.check_texture_cut,
            profile=TEXTURE_PROFILE,
        ),
        ToolSpec(
            name="recolor_image",
            description="Map palette colors to new colors",
            schema=ToolSchema(
                properties={
                    "colorMappings": ParamSpec("array", items=_MAPPING_ITEM),
                    "blendMode": ParamSpec("string", enum=("replace", "overlay", "multiply"), default="replace"),
                    "tolerance": ParamSpec("number", minimum=0, maximum=100, default=30),
                },
                required=("colorMappings",),
            ),
            plausibility=rules.check_recolor_image,
            profile=RECOLOR_PROFILE,
        ),
        ToolSpec(
            name="upscaler",
            description="Increase resolution with a super-resolution model",
            schema=ToolSchema(
                properties={
                    "model": ParamSpec("string", enum=("standard", "creative", "anime"), default="standard"),
                    "scaleFactor": ParamSpec("number", minimum=1, maximum=10, default=2),
                    "faceEnhance": ParamSpec("boolean", default=False),
                    "outputFormat": ParamSpec("string", enum=("png", "jpg", "webp"), default="png"),
                },
                required=("scaleFactor",),
            ),
            plausibility=rules.check_upscaler,
            profile=UPSCALE_PROFILE,
        ),
        ToolSpec(
            name="auto_crop",
            description="Trim empty space around the design",
            schema=ToolSchema(
                properties={
                    "tolerance": ParamSpec("number", minimum=0, maximum=255, default=30),
                    "minPadding": ParamSpec("number", minimum=0, maximum=100, default=0),
                    "backgroundColor": ParamSpec("string", default="white"),
                },
            ),
            plausibility=rules.check_auto_crop,
            profile=AUTO_CROP_PROFILE,
        ),
        ToolSpec(
            name="crop_with_spacing",
            description="Crop to content leaving a fixed margin",
            schema=ToolSchema(
                properties={
                    "spacing": ParamSpec("number", minimum=0),
                    "unit": ParamSpec("string", enum=("px", "inches"), default="px"),
                    "dpi": ParamSpec("number", minimum=1, maximum=2400, default=300),
                },
                required=("spacing",),
            ),
            plausibility=rules.check_crop_with_spacing,
            profile=SPACING_CROP_PROFILE,
        ),
        ToolSpec(
            name="rotate_flip",
            description="Rotate by a multiple of 90 degrees or mirror",
            schema=ToolSchema(
                properties={"operation": _ROTATE_FLIP_OPERATION},
                required=("operation",),
            ),
            plausibility=rules.check_rotate_flip,
            profile=TARGET_PROFILE,
            target_size=rules.rotate_flip_target,
        ),
        ToolSpec(
            name="smart_resize",
            description="Resize to target dimensions",
            schema=ToolSchema(
                properties={
                    "width": ParamSpec("number", minimum=1),
                    "height": ParamSpec("number", minimum=1),
                    "unit": ParamSpec("string", enum=("px", "percent"), default="px"),
                    "maintainAspectRatio": ParamSpec("boolean", default=True),
                },
            ),
            plausibility=rules.check_smart_resize,
            profile=TARGET_PROFILE,
            target_size=rules.smart_resize_target,
        ),
        ToolSpec(
            name="extract_color_palette",
            description="Report dominant colors",
            schema=ToolSchema(
                properties={
                    "paletteSize": ParamSpec("number", enum=(9, 36), default=9),
                    "algorithm": ParamSpec("string", enum=("smart", "detailed"), default="smart"),
                },
            ),
            plausibility=rules.check_extract_color_palette,
            profile=INFO_PROFILE,
        ),
        ToolSpec(
            name="pick_color_at_position",
            description="Report the color at a pixel",
            schema=ToolSchema(
                properties={"x": ParamSpec("number"), "y": ParamSpec("number")},
                required=("x", "y"),
            ),
            plausibility=rules.check_pick_color_at_position,
            profile=INFO_PROFILE,
        ),
    ]
    return {spec.name: spec for spec in specs}


TOOL_REGISTRY: Dict[str, ToolSpec] = _build_registry()


def get_tool(name: str) -> Optional[ToolSpec]:
    return TOOL_REGISTRY.get(name)


def known_tools() -> List[str]:
    return sorted(TOOL_REGISTRY)


def expected_profile(name: str, parameters: Optional[dict] = None) -> Optional[ExpectedOperationProfile]:
    spec = TOOL_REGISTRY.get(name)
    return spec.profile_for(parameters) if spec else None
