"""
Stable per-model chart colours.

A colour is generated once per model and persisted with the settings, so a
model keeps its colour across sessions.
"""

import colorsys
import math
import random
from typing import Iterable, Optional

from ..storage.repository import SettingsStore

MIN_COLOR_DISTANCE = 50
MAX_ATTEMPTS = 50


def hsl_to_hex(hue: int, saturation: int, lightness: int) -> str:
    """Convert HSL (degrees, percent, percent) to ``#rrggbb``."""
    r, g, b = colorsys.hls_to_rgb(hue / 360, lightness / 100, saturation / 100)
    return "#{:02x}{:02x}{:02x}".format(round(r * 255), round(g * 255), round(b * 255))


def color_distance(first: str, second: str) -> float:
    """Euclidean distance between two ``#rrggbb`` colours in RGB space."""
    a = [int(first[i:i + 2], 16) for i in (1, 3, 5)]
    b = [int(second[i:i + 2], 16) for i in (1, 3, 5)]
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def is_too_similar(color: str, existing: Iterable[str]) -> bool:
    return any(color_distance(color, other) < MIN_COLOR_DISTANCE for other in existing)


class ModelColorRegistry:
    """Assigns and persists a distinct colour for every model id."""

    def __init__(self, settings_store: SettingsStore, rng: Optional[random.Random] = None):
        self.settings_store = settings_store
        self._rng = rng or random.Random()

    def get_color(self, model_id: str) -> str:
        """Return the model's colour, generating and saving one on first use.

        Candidates use a random hue with saturation 60-79% and lightness
        45-64%. Up to 50 candidates are tried until one is at least 50 RGB
        units away from every assigned colour; the last candidate is kept
        otherwise.
        """
        colors = self.settings_store.settings.model_colors
        if model_id in colors:
            return colors[model_id]

        existing = list(colors.values())
        color = self._candidate()
        attempts = 1
        while attempts < MAX_ATTEMPTS and is_too_similar(color, existing):
            color = self._candidate()
            attempts += 1

        colors[model_id] = color
        self.settings_store.save()
        return color

    def set_color(self, model_id: str, color: str) -> None:
        self.settings_store.settings.model_colors[model_id] = color
        self.settings_store.save()

    def _candidate(self) -> str:
        hue = self._rng.randrange(360)
        saturation = 60 + self._rng.randrange(20)
        lightness = 45 + self._rng.randrange(20)
        return hsl_to_hex(hue, saturation, lightness)
