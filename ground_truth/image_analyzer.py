"""
Ground-truth image analysis.

Extracts measurable facts from image bytes: dimensions, dominant colours with
pixel fractions, transparency, sharpness, noise, DPI and print readiness.
These measurements are what the validators check model-proposed parameters
against. All functions here are pure and deterministic.
"""

from __future__ import annotations

import io
import math
from dataclasses import asdict, dataclass, field
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError
from scipy.ndimage import uniform_filter

from guardrail.errors import AnalysisError

from .color_utils import rgb_to_hex

# Pixels with alpha below this are treated as "not there" for colour statistics.
MIN_VISIBLE_ALPHA = 10

# Dominant-colour bucketing
QUANT_STEP = 16
MERGE_DISTANCE = 24.0
DEFAULT_MAX_COLORS = 9
MAX_COLOR_SAMPLES = 1_000_000

# Quality metrics are computed on a central window of at most this size.
MAX_METRIC_SIDE = 2048
NOISE_WINDOW = 5

# Print readiness
DEFAULT_DPI = 72.0
MIN_PRINT_DPI = 300.0
MIN_PRINT_INCHES = 2.0
MIN_PRINT_SHARPNESS = 40.0
BLURRY_BELOW = 50.0

_COMMON_RATIOS = (
    (1.0, "1:1"),
    (4 / 3, "4:3"),
    (3 / 2, "3:2"),
    (16 / 9, "16:9"),
    (16 / 10, "16:10"),
    (21 / 9, "21:9"),
    (2 / 3, "2:3"),
    (9 / 16, "9:16"),
)


@dataclass(frozen=True)
class DominantColor:
    r: int
    g: int
    b: int
    hex: str
    pixel_fraction: float       # share of ALL pixels in the image, 0-1
    pixel_count: int = 0

    @property
    def rgb(self) -> Tuple[int, int, int]:
        return (self.r, self.g, self.b)


@dataclass(frozen=True)
class ImageAnalysis:
    """Measured facts about one image state. Never mutated, only superseded."""
    width: int
    height: int
    aspect_ratio: str = "0:0"
    format: str = "unknown"
    file_size: int = 0
    dpi: float = DEFAULT_DPI
    dpi_from_metadata: bool = False
    has_transparency: bool = False
    dominant_colors: Tuple[DominantColor, ...] = field(default_factory=tuple)
    unique_color_count: int = 0
    sharpness: float = 0.0          # 0 (very blurry) - 100 (very sharp)
    noise_level: float = 0.0        # 0 (clean) - 100 (very noisy)
    is_blurry: bool = True
    is_print_ready: bool = False
    printable_at_size: Tuple[float, float] = (0.0, 0.0)
    confidence: float = 100.0

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def megapixels(self) -> float:
        return self.pixel_count / 1_000_000

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ImageAnalysis":
        data = dict(data)
        data["dominant_colors"] = tuple(
            DominantColor(**c) for c in data.get("dominant_colors", ())
        )
        data["printable_at_size"] = tuple(data.get("printable_at_size", (0.0, 0.0)))
        return cls(**data)


@dataclass
class DecodedImage:
    pixels: np.ndarray          # (H, W, 4) uint8 RGBA
    format: str
    dpi: Optional[float]
    file_size: int


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def decode_image(image_bytes: bytes) -> DecodedImage:
    """Decode bytes into an RGBA array. Raises AnalysisError on bad data."""
    if not isinstance(image_bytes, (bytes, bytearray)) or not image_bytes:
        raise AnalysisError("Image data is empty or not bytes")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            fmt = (img.format or "unknown").lower()
            dpi = _read_dpi(img.info)
            rgba = img.convert("RGBA")
            pixels = np.array(rgba, dtype=np.uint8)
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        raise AnalysisError(f"Could not decode image: {e}") from e

    if pixels.ndim != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise AnalysisError("Decoded image has no pixels")
    return DecodedImage(pixels=pixels, format=fmt, dpi=dpi, file_size=len(image_bytes))


def load_rgba(image_bytes: bytes) -> np.ndarray:
    """Decode to a (H, W, 4) uint8 array."""
    return decode_image(image_bytes).pixels


def encode_png(pixels: np.ndarray, dpi: Optional[float] = None) -> bytes:
    """Encode an RGB/RGBA uint8 array as PNG bytes."""
    arr = np.ascontiguousarray(pixels, dtype=np.uint8)
    mode = "RGBA" if arr.ndim == 3 and arr.shape[2] == 4 else "RGB"
    with io.BytesIO() as buffer:
        kwargs = {"dpi": (dpi, dpi)} if dpi else {}
        Image.fromarray(arr, mode=mode).save(buffer, format="PNG", **kwargs)
        return buffer.getvalue()


def _read_dpi(info: dict) -> Optional[float]:
    raw = info.get("dpi")
    if not raw:
        return None
    try:
        value = float(raw[0] if isinstance(raw, (tuple, list)) else raw)
    except (TypeError, ValueError):
        return None
    # PNG stores pixels per metre; 300 dpi reads back as 299.9994
    return round(value, 1) if value > 0 else None


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def analyze(image_bytes: bytes, max_colors: int = DEFAULT_MAX_COLORS) -> ImageAnalysis:
    """
    Analyze image bytes and return ground-truth measurements.

    Args:
        image_bytes: Encoded image (PNG, JPEG, WebP, ...).
        max_colors: Maximum number of dominant colours reported.

    Returns:
        ImageAnalysis. Deterministic for identical input.

    Raises:
        AnalysisError: only when the bytes cannot be decoded.
    """
    decoded = decode_image(image_bytes)
    return analyze_decoded(decoded, max_colors=max_colors)


def analyze_decoded(decoded: DecodedImage, max_colors: int = DEFAULT_MAX_COLORS) -> ImageAnalysis:
    """Analyze an already decoded image."""
    pixels = decoded.pixels
    height, width = pixels.shape[:2]
    confidence = 100.0

    dpi = decoded.dpi or DEFAULT_DPI

    has_transparency = bool((pixels[:, :, 3] < 255).any())

    dominant: Tuple[DominantColor, ...] = ()
    unique_colors = 0
    try:
        dominant = extract_dominant_colors(pixels, max_colors=max_colors)
        unique_colors = count_unique_colors(pixels)
    except (ValueError, MemoryError) as e:
        print(f"[ImageAnalyzer] Colour analysis failed: {e}")
        confidence = min(confidence, 85.0)

    gray = _metric_window(pixels)
    sharpness = 0.0
    try:
        sharpness = compute_sharpness(gray)
    except (ValueError, cv2.error) as e:
        print(f"[ImageAnalyzer] Sharpness calculation failed: {e}")
        confidence = min(confidence, 90.0)

    noise = 0.0
    try:
        noise = compute_noise(gray)
    except (ValueError, MemoryError) as e:
        print(f"[ImageAnalyzer] Noise detection failed: {e}")
        confidence = min(confidence, 90.0)

    printable = (round(width / dpi, 1), round(height / dpi, 1))
    print_ready = (
        dpi >= MIN_PRINT_DPI
        and printable[0] >= MIN_PRINT_INCHES
        and printable[1] >= MIN_PRINT_INCHES
        and sharpness >= MIN_PRINT_SHARPNESS
    )

    return ImageAnalysis(
        width=int(width),
        height=int(height),
        aspect_ratio=aspect_ratio(width, height),
        format=decoded.format,
        file_size=decoded.file_size,
        dpi=float(dpi),
        dpi_from_metadata=decoded.dpi is not None,
        has_transparency=has_transparency,
        dominant_colors=dominant,
        unique_color_count=int(unique_colors),
        sharpness=round(sharpness, 2),
        noise_level=round(noise, 2),
        is_blurry=sharpness < BLURRY_BELOW,
        is_print_ready=bool(print_ready),
        printable_at_size=printable,
        confidence=confidence,
    )


def extract_dominant_colors(
    pixels: np.ndarray,
    max_colors: int = DEFAULT_MAX_COLORS,
) -> Tuple[DominantColor, ...]:
    """
    Bucket visible pixels on a QUANT_STEP grid, merge neighbouring buckets and
    return the most populous colours with their fraction of all pixels.
    """
    flat = pixels.reshape(-1, 4)
    stride = max(1, math.ceil(flat.shape[0] / MAX_COLOR_SAMPLES))
    flat = flat[::stride]
    sample_total = flat.shape[0]

    visible = flat[flat[:, 3] >= MIN_VISIBLE_ALPHA]
    if visible.shape[0] == 0:
        return ()

    rgb = visible[:, :3].astype(np.int64)
    levels = 256 // QUANT_STEP
    q = rgb // QUANT_STEP
    keys = (q[:, 0] * levels + q[:, 1]) * levels + q[:, 2]
    uniq, inverse, counts = np.unique(keys, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)

    sums = np.stack(
        [np.bincount(inverse, weights=rgb[:, c], minlength=len(uniq)) for c in range(3)],
        axis=1,
    )

    # Greedy merge, most populous buckets first.
    cluster_sums: list = []
    cluster_counts: list = []
    for idx in np.argsort(-counts, kind="stable"):
        bucket_mean = sums[idx] / counts[idx]
        for ci in range(len(cluster_sums)):
            cluster_mean = cluster_sums[ci] / cluster_counts[ci]
            if np.linalg.norm(cluster_mean - bucket_mean) <= MERGE_DISTANCE:
                cluster_sums[ci] = cluster_sums[ci] + sums[idx]
                cluster_counts[ci] += int(counts[idx])
                break
        else:
            cluster_sums.append(sums[idx].astype(np.float64))
            cluster_counts.append(int(counts[idx]))

    order = sorted(range(len(cluster_counts)), key=lambda i: (-cluster_counts[i], i))
    colors = []
    for ci in order[:max_colors]:
        mean = cluster_sums[ci] / cluster_counts[ci]
        r, g, b = (int(round(v)) for v in mean)
        colors.append(
            DominantColor(
                r=r,
                g=g,
                b=b,
                hex=rgb_to_hex(r, g, b),
                pixel_fraction=cluster_counts[ci] / sample_total,
                pixel_count=cluster_counts[ci] * stride,
            )
        )
    return tuple(colors)


def count_unique_colors(pixels: np.ndarray) -> int:
    """Approximate unique visible colours (quantised to steps of 4)."""
    flat = pixels.reshape(-1, 4)
    stride = max(1, math.ceil(flat.shape[0] / MAX_COLOR_SAMPLES))
    flat = flat[::stride]
    visible = flat[flat[:, 3] >= MIN_VISIBLE_ALPHA][:, :3].astype(np.int64) // 4
    if visible.shape[0] == 0:
        return 0
    keys = (visible[:, 0] * 64 + visible[:, 1]) * 64 + visible[:, 2]
    return int(np.unique(keys).size)


def compute_sharpness(gray: np.ndarray) -> float:
    """
    Laplacian-variance sharpness on the central 80% of the image, 0-100.
    Typical sharp images have variance > 100, blurry ones < 10.
    """
    h, w = gray.shape
    y0, y1 = int(h * 0.1), int(math.ceil(h * 0.9))
    x0, x1 = int(w * 0.1), int(math.ceil(w * 0.9))
    if y1 - y0 < 3 or x1 - x0 < 3:
        y0, y1, x0, x1 = 0, h, 0, w
    if y1 - y0 < 3 or x1 - x0 < 3:
        return 0.0
    lap = cv2.Laplacian(gray, cv2.CV_64F, ksize=1)[y0:y1, x0:x1]
    return float(max(0.0, min(100.0, lap.var())))


def compute_noise(gray: np.ndarray) -> float:
    """
    Median local variance, 0-100. The median is dominated by smooth regions,
    so edges barely move it while sensor/compression noise does.
    """
    if gray.shape[0] < NOISE_WINDOW or gray.shape[1] < NOISE_WINDOW:
        return 0.0
    mean = uniform_filter(gray, size=NOISE_WINDOW)
    mean_sq = uniform_filter(gray * gray, size=NOISE_WINDOW)
    local_var = np.clip(mean_sq - mean * mean, 0.0, None)
    return float(min(100.0, np.median(local_var) / 200.0 * 100.0))


def _metric_window(pixels: np.ndarray) -> np.ndarray:
    """Grayscale float64 view of (at most) the central MAX_METRIC_SIDE square."""
    h, w = pixels.shape[:2]
    y0 = max(0, (h - MAX_METRIC_SIDE) // 2)
    x0 = max(0, (w - MAX_METRIC_SIDE) // 2)
    window = np.ascontiguousarray(pixels[y0:y0 + MAX_METRIC_SIDE, x0:x0 + MAX_METRIC_SIDE, :3])
    return cv2.cvtColor(window, cv2.COLOR_RGB2GRAY).astype(np.float64)


def aspect_ratio(width: int, height: int) -> str:
    """Simplified aspect ratio, snapping to common ratios within 1%."""
    if width <= 0 or height <= 0:
        return "0:0"
    ratio = width / height
    for value, name in _COMMON_RATIOS:
        if abs(ratio - value) / value < 0.01:
            return name
    divisor = math.gcd(width, height)
    return f"{width // divisor}:{height // divisor}"


def format_analysis_summary(analysis: ImageAnalysis) -> str:
    """Human-readable summary of an analysis."""
    colors = ", ".join(
        f"{c.hex} ({c.pixel_fraction * 100:.1f}%)" for c in analysis.dominant_colors
    )
    lines = [
        "=== IMAGE ANALYSIS ===",
        f"Size: {analysis.width} x {analysis.height} ({analysis.megapixels:.2f}MP, {analysis.aspect_ratio})",
        f"Format: {analysis.format.upper()}  File size: {analysis.file_size / 1024:.1f} KB",
        f"Transparency: {'Yes' if analysis.has_transparency else 'No'}",
        f"Unique colours: ~{analysis.unique_color_count}",
        f"Dominant colours: {colors or 'none'}",
        f"Sharpness: {analysis.sharpness:.0f}/100 {'(BLURRY)' if analysis.is_blurry else '(Sharp)'}",
        f"Noise level: {analysis.noise_level:.0f}/100",
        f"DPI: {analysis.dpi:.0f}{'' if analysis.dpi_from_metadata else ' (assumed)'}",
        f"Printable size: {analysis.printable_at_size[0]}\" x {analysis.printable_at_size[1]}\"",
        f"Print ready: {'YES' if analysis.is_print_ready else 'NO'}",
        f"Analysis confidence: {analysis.confidence:.0f}%",
    ]
    return "\n".join(lines)
