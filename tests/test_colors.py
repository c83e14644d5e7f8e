"""
Unit tests for per-model chart colours.
"""

import random
from unittest.mock import Mock

import pytest

from token_usage_tracker.core.colors import (
    ModelColorRegistry,
    color_distance,
    hsl_to_hex,
    is_too_similar,
)
from token_usage_tracker.storage.repository import SettingsStore


@pytest.mark.parametrize("hsl,expected", [
    ((0, 100, 50), "#ff0000"),
    ((120, 100, 25), "#008000"),
    ((240, 100, 50), "#0000ff"),
    ((0, 0, 100), "#ffffff"),
    ((0, 0, 0), "#000000"),
])
def test_hsl_to_hex(hsl, expected):
    assert hsl_to_hex(*hsl) == expected


def test_color_distance():
    assert color_distance("#000000", "#000000") == 0
    assert color_distance("#000000", "#030400") == 5
    assert color_distance("#000000", "#ffffff") == pytest.approx(441.67, abs=0.01)


def test_is_too_similar():
    assert is_too_similar("#101010", ["#ffffff", "#121212"]) is True
    assert is_too_similar("#101010", ["#ffffff", "#808080"]) is False
    assert is_too_similar("#101010", []) is False


class TestModelColorRegistry:
    """Test colour assignment and persistence."""

    def test_color_is_stable(self, settings_store):
        registry = ModelColorRegistry(settings_store, rng=random.Random(7))

        first = registry.get_color("gpt-4o")

        assert registry.get_color("gpt-4o") == first
        assert first.startswith("#") and len(first) == 7

    def test_color_persisted(self, settings_store, repository):
        color = ModelColorRegistry(settings_store, rng=random.Random(7)).get_color("gpt-4o")

        assert repository.blob["modelColors"] == {"gpt-4o": color}
        reloaded = ModelColorRegistry(SettingsStore(repository), rng=random.Random(99))
        assert reloaded.get_color("gpt-4o") == color

    def test_colors_kept_apart(self, settings_store):
        registry = ModelColorRegistry(settings_store, rng=random.Random(1234))

        colors = [registry.get_color(f"model-{i}") for i in range(6)]

        for i, color in enumerate(colors):
            assert not is_too_similar(color, colors[:i])

    def test_last_candidate_kept_when_space_exhausted(self, settings_store):
        """With a generator that always repeats, the 50th candidate is accepted anyway."""
        rng = Mock()
        rng.randrange.return_value = 10
        registry = ModelColorRegistry(settings_store, rng=rng)
        first = registry.get_color("a")

        assert registry.get_color("b") == first
        # 3 draws for "a", 50 candidates of 3 draws for "b"
        assert rng.randrange.call_count == 3 + 50 * 3

    def test_set_color_overrides(self, settings_store, repository):
        registry = ModelColorRegistry(settings_store)

        registry.set_color("claude", "#123456")

        assert registry.get_color("claude") == "#123456"
        assert repository.blob["modelColors"]["claude"] == "#123456"
