from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from .models import StylePreferences

HEX_COLOR = re.compile(r"#[0-9A-Fa-f]{6}")


@dataclass(frozen=True)
class ColorPalette:
    primary: str
    secondary: str
    background: str
    text: str
    text_muted: str

    def as_lines(self) -> list[str]:
        return [
            f"Primary: {self.primary}",
            f"Secondary: {self.secondary}",
            f"Background: {self.background}",
            f"Text: {self.text}",
            f"Muted text: {self.text_muted}",
        ]


PRESET_PALETTES: Mapping[str, ColorPalette] = MappingProxyType(
    {
        "warm": ColorPalette("#F07D2E", "#FFB347", "#FFF8EE", "#2D1B0E", "#6B5744"),
        "cool": ColorPalette("#3DA7DB", "#5EC4F0", "#F5F5F5", "#1A2B3C", "#5A6B7C"),
        "bold": ColorPalette("#E53E3E", "#1A1A2E", "#FFFFFF", "#111111", "#555555"),
        "earth": ColorPalette("#6B8E23", "#8B7355", "#FFF8DC", "#2A2418", "#6B5E4F"),
        "minimal": ColorPalette("#333333", "#666666", "#FFFFFF", "#111111", "#888888"),
    }
)

STYLE_PRESETS: frozenset[str] = frozenset(PRESET_PALETTES) | {"custom"}

_CUSTOM_PRIMARY_DEFAULT = "#333333"
_CUSTOM_SECONDARY_DEFAULT = "#666666"


def is_hex_color(value: str) -> bool:
    return bool(HEX_COLOR.fullmatch(value))


def is_dark(color: str) -> bool:
    """Relative luminance below 0.5 (Rec. 709 weights). Non-hex input counts as light."""
    if not is_hex_color(color):
        return False
    red, green, blue = (int(color[index : index + 2], 16) / 255 for index in (1, 3, 5))
    return 0.2126 * red + 0.7152 * green + 0.0722 * blue < 0.5


def resolve_colors(style: StylePreferences) -> ColorPalette:
    """Resolve the palette the build prompt embeds.

    Named presets map to fixed palettes. ``custom`` takes the submitted colours
    (falling back to neutral greys) on a white background, with light text
    when the secondary colour is dark. Unknown presets resolve to ``minimal``.
    """
    preset = style.style_preset.strip().lower()
    if preset in PRESET_PALETTES:
        return PRESET_PALETTES[preset]
    if preset != "custom":
        return PRESET_PALETTES["minimal"]

    primary = style.primary_color.strip() if is_hex_color(style.primary_color.strip()) else _CUSTOM_PRIMARY_DEFAULT
    secondary = (
        style.secondary_color.strip() if is_hex_color(style.secondary_color.strip()) else _CUSTOM_SECONDARY_DEFAULT
    )
    if is_dark(secondary):
        return ColorPalette(primary, secondary, "#FFFFFF", "#F5F5F5", "#CCCCCC")
    return ColorPalette(primary, secondary, "#FFFFFF", "#111111", "#555555")
