"""
Colour helpers shared by the analyzer and the validators.

RGB distances are plain Euclidean distances in 0-255 space (max ~441.7).
Perceptual differences use CIEDE2000 on Lab values converted with OpenCV.
"""

from __future__ import annotations

import math
import re
from typing import Optional, Tuple

import cv2
import numpy as np

MAX_RGB_DISTANCE = math.sqrt(3 * 255 ** 2)

_HEX_RE = re.compile(r"^#?([a-fA-F\d]{2})([a-fA-F\d]{2})([a-fA-F\d]{2})$")

# Named colours accepted by the trim/crop tools.
NAMED_COLORS = {
    "white": (255, 255, 255),
    "black": (0, 0, 0),
    "red": (255, 0, 0),
    "green": (0, 128, 0),
    "blue": (0, 0, 255),
    "yellow": (255, 255, 0),
    "orange": (255, 140, 0),
    "purple": (128, 0, 128),
    "pink": (255, 192, 203),
    "gray": (128, 128, 128),
    "grey": (128, 128, 128),
}

RGB = Tuple[int, int, int]


def parse_hex(value: str) -> Optional[RGB]:
    """Return (r, g, b) for '#rrggbb' / 'rrggbb', or None if malformed."""
    if not isinstance(value, str):
        return None
    m = _HEX_RE.match(value.strip())
    if not m:
        return None
    return tuple(int(part, 16) for part in m.groups())  # type: ignore[return-value]


def rgb_to_hex(r: float, g: float, b: float) -> str:
    return "#" + "".join(f"{int(round(c)):02x}" for c in (r, g, b))


def resolve_color(value: str) -> Optional[RGB]:
    """Resolve a colour name or hex string."""
    if not isinstance(value, str):
        return None
    named = NAMED_COLORS.get(value.strip().lower())
    if named is not None:
        return named
    return parse_hex(value)


def color_distance(a: RGB, b: RGB) -> float:
    """Euclidean distance in RGB space."""
    return math.sqrt(sum((float(x) - float(y)) ** 2 for x, y in zip(a, b)))


def tolerance_to_distance(tolerance: float) -> float:
    """Map a 0-100 tolerance onto an RGB distance."""
    return max(0.0, min(100.0, float(tolerance))) / 100.0 * MAX_RGB_DISTANCE


def rgb_to_lab(rgb: RGB) -> Tuple[float, float, float]:
    """sRGB (0-255) → CIE Lab (L 0-100)."""
    pixel = np.array([[rgb]], dtype=np.float32) / 255.0
    lab = cv2.cvtColor(pixel, cv2.COLOR_RGB2Lab)[0, 0]
    return float(lab[0]), float(lab[1]), float(lab[2])


def delta_e2000(lab1: Tuple[float, float, float], lab2: Tuple[float, float, float]) -> float:
    """CIEDE2000 colour difference."""
    L1, a1, b1 = lab1
    L2, a2, b2 = lab2

    c1 = math.hypot(a1, b1)
    c2 = math.hypot(a2, b2)
    c_bar = (c1 + c2) / 2.0
    g = 0.5 * (1 - math.sqrt(c_bar ** 7 / (c_bar ** 7 + 25 ** 7))) if c_bar else 0.0

    a1p = (1 + g) * a1
    a2p = (1 + g) * a2
    c1p = math.hypot(a1p, b1)
    c2p = math.hypot(a2p, b2)
    h1p = math.degrees(math.atan2(b1, a1p)) % 360 if c1p else 0.0
    h2p = math.degrees(math.atan2(b2, a2p)) % 360 if c2p else 0.0

    d_lp = L2 - L1
    d_cp = c2p - c1p
    if c1p * c2p == 0:
        d_hp = 0.0
    else:
        dh = h2p - h1p
        if dh > 180:
            dh -= 360
        elif dh < -180:
            dh += 360
        d_hp = dh
    d_HP = 2 * math.sqrt(c1p * c2p) * math.sin(math.radians(d_hp) / 2)

    l_bar = (L1 + L2) / 2.0
    c_bar_p = (c1p + c2p) / 2.0
    if c1p * c2p == 0:
        h_bar = h1p + h2p
    elif abs(h1p - h2p) <= 180:
        h_bar = (h1p + h2p) / 2.0
    elif h1p + h2p < 360:
        h_bar = (h1p + h2p + 360) / 2.0
    else:
        h_bar = (h1p + h2p - 360) / 2.0

    t = (
        1
        - 0.17 * math.cos(math.radians(h_bar - 30))
        + 0.24 * math.cos(math.radians(2 * h_bar))
        + 0.32 * math.cos(math.radians(3 * h_bar + 6))
        - 0.20 * math.cos(math.radians(4 * h_bar - 63))
    )
    d_theta = 30 * math.exp(-(((h_bar - 275) / 25) ** 2))
    r_c = 2 * math.sqrt(c_bar_p ** 7 / (c_bar_p ** 7 + 25 ** 7)) if c_bar_p else 0.0
    s_l = 1 + (0.015 * (l_bar - 50) ** 2) / math.sqrt(20 + (l_bar - 50) ** 2)
    s_c = 1 + 0.045 * c_bar_p
    s_h = 1 + 0.015 * c_bar_p * t
    r_t = -math.sin(math.radians(2 * d_theta)) * r_c

    return math.sqrt(
        (d_lp / s_l) ** 2
        + (d_cp / s_c) ** 2
        + (d_HP / s_h) ** 2
        + r_t * (d_cp / s_c) * (d_HP / s_h)
    )
