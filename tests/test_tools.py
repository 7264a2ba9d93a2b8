"""Test the AI tool catalog."""

from __future__ import annotations

import pytest

from creative_workflow.models import TrackingLevel
from creative_workflow.tools import DEFAULT_TOOLS, AITool, ToolCatalog, tracking_level_for


@pytest.mark.parametrize(
    ("label", "level"),
    [
        ("Full Tracking", TrackingLevel.FULL),
        ("Good Tracking", TrackingLevel.PARTIAL),
        ("Basic Tracking", TrackingLevel.PARTIAL),
        ("No Tracking", TrackingLevel.NONE),
        (None, TrackingLevel.NONE),
    ],
)
def test_tracking_level_for(label, level) -> None:
    assert tracking_level_for(label) == level


class TestToolCatalog:
    def test_default_whitelist(self) -> None:
        catalog = ToolCatalog()
        names = [tool.name for tool in catalog.available_for_project()]
        assert names == ["Midjourney", "ChatGPT", "ElevenLabs", "Runway", "DALL-E 3", "Stable Diffusion"]
        assert len(DEFAULT_TOOLS) == 6

    def test_resolve_by_id_or_name(self) -> None:
        catalog = ToolCatalog()
        assert catalog.resolve("1").name == "Midjourney"
        assert catalog.resolve("  elevenlabs ").id == "3"
        assert catalog.resolve("ToolX") is None
        assert catalog.resolve("Runway").tracking_label == "Good Tracking"

    def test_only_approved_active_tools_are_available(self) -> None:
        catalog = ToolCatalog(
            [
                AITool(id="a", name="Alpha"),
                AITool(id="b", name="Beta", approved=False, status="Under Review"),
                AITool(id="c", name="Gamma", active=False),
                AITool(id="d", name="Delta", project_availability="restricted", selected_projects=["p1"]),
            ]
        )
        assert [t.id for t in catalog.available_for_project("p2")] == ["a"]
        assert [t.id for t in catalog.available_for_project("p1")] == ["a", "d"]

    def test_search_filters_by_name_and_category(self) -> None:
        catalog = ToolCatalog()
        assert [t.name for t in catalog.search("dall")] == ["DALL-E 3"]
        image = catalog.search(category="Image Generation")
        assert {t.name for t in image} == {"Midjourney", "DALL-E 3", "Stable Diffusion"}

    def test_from_config_merges_extra_tools(self) -> None:
        catalog = ToolCatalog.from_config(
            [
                {"id": "7", "name": "Suno", "category": "Audio Generation", "tracking_label": "Basic Tracking"},
                {"id": "1", "name": "Midjourney", "tracking_label": "Good Tracking"},
                {"category": "ignored"},
            ]
        )
        assert len(catalog.available_for_project()) == 7
        assert catalog.resolve("Suno").tracking_level == TrackingLevel.PARTIAL
        assert catalog.resolve("1").tracking_level == TrackingLevel.PARTIAL

    def test_to_dict_includes_tracking_level(self) -> None:
        data = ToolCatalog().resolve("ChatGPT").to_dict()
        assert data["tracking_level"] == "full"
        assert AITool.from_dict(data).name == "ChatGPT"
