"""
Nearest-match mapping from arbitrary colors to the remote calendar palette.
"""

import math
import re

from timetable_sync.models import FormatError

# (palette id, hex, name) in palette order; ties resolve to the earliest entry.
PALETTE: tuple[tuple[str, str, str], ...] = (
    ("1", "#a4bdfc", "Lavender"),
    ("2", "#7ae7bf", "Sage"),
    ("3", "#dbadff", "Grape"),
    ("4", "#ff887c", "Flamingo"),
    ("5", "#fbd75b", "Banana"),
    ("6", "#ffb878", "Tangerine"),
    ("7", "#46d6db", "Peacock"),
    ("8", "#e1e1e1", "Graphite"),
    ("9", "#5484ed", "Blueberry"),
    ("10", "#51b749", "Basil"),
    ("11", "#dc2127", "Tomato"),
)

_HEX_RE = re.compile(r"^#?([0-9a-fA-F]{6})$")


def parse_hex(color: str) -> tuple[int, int, int]:
    """Return the (r, g, b) triple of a 6-digit hex color, '#' optional."""
    if not isinstance(color, str):
        raise FormatError(f"color must be a hex string, got {type(color).__name__}")
    m = _HEX_RE.match(color.strip())
    if not m:
        raise FormatError(f"malformed color {color!r}: expected 6 hex digits")
    digits = m.group(1)
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


_PALETTE_RGB = tuple((pid, parse_hex(hex_value)) for pid, hex_value, _ in PALETTE)


def map_color(color: str) -> str:
    """Return the palette id closest to ``color`` by Euclidean RGB distance."""
    rgb = parse_hex(color)
    best_id = _PALETTE_RGB[0][0]
    best_distance = math.inf
    for pid, candidate in _PALETTE_RGB:
        distance = math.dist(rgb, candidate)
        if distance < best_distance:
            best_id, best_distance = pid, distance
    return best_id


def available_colors() -> list[dict[str, str]]:
    """Return a copy of the palette as id/hex/name records."""
    return [{"id": pid, "hex": hex_value, "name": name} for pid, hex_value, name in PALETTE]
