"""AI tool whitelist and tracking-capability lookup.

The catalog is an external collaborator of the workflow engine: selection
only needs a tool's advertised tracking label, resolved here as a pure
lookup.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Optional

from .constants import TRACKING_LABEL_FULL, TRACKING_LABELS_PARTIAL
from .models import TrackingLevel


def tracking_level_for(label: Optional[str]) -> TrackingLevel:
    """Map a catalog tracking label to the task's tracking level."""
    if label == TRACKING_LABEL_FULL:
        return TrackingLevel.FULL
    if label in TRACKING_LABELS_PARTIAL:
        return TrackingLevel.PARTIAL
    return TrackingLevel.NONE


@dataclass
class AITool:
    id: str
    name: str
    category: str = ""
    base_url: str = ""
    status: str = "Approved"  # Approved, Under Review, Pending Approval, Archived
    tracking_label: str = "Basic Tracking"
    approved: bool = True
    active: bool = True
    description: str = ""
    project_availability: str = "all"  # all, restricted
    selected_projects: list[str] = field(default_factory=list)

    @property
    def tracking_level(self) -> TrackingLevel:
        return tracking_level_for(self.tracking_label)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tracking_level"] = self.tracking_level.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AITool":
        return cls(
            id=str(data.get("id") or data.get("name") or ""),
            name=str(data.get("name") or data.get("id") or ""),
            category=str(data.get("category") or ""),
            base_url=str(data.get("base_url") or ""),
            status=str(data.get("status") or "Approved"),
            tracking_label=str(data.get("tracking_label") or "Basic Tracking"),
            approved=bool(data.get("approved", True)),
            active=bool(data.get("active", True)),
            description=str(data.get("description") or ""),
            project_availability=str(data.get("project_availability") or "all"),
            selected_projects=list(data.get("selected_projects") or []),
        )


DEFAULT_TOOLS: tuple[AITool, ...] = (
    AITool(
        id="1",
        name="Midjourney",
        category="Image Generation",
        base_url="https://midjourney.com",
        tracking_label="Full Tracking",
        description="AI image generation tool",
    ),
    AITool(
        id="2",
        name="ChatGPT",
        category="Text Generation",
        base_url="https://chat.openai.com",
        tracking_label="Full Tracking",
        description="Large language model for text generation",
    ),
    AITool(
        id="3",
        name="ElevenLabs",
        category="Audio Generation",
        base_url="https://elevenlabs.io",
        tracking_label="Good Tracking",
        description="AI voice synthesis and cloning",
    ),
    AITool(
        id="4",
        name="Runway",
        category="Video Generation",
        base_url="https://runwayml.com",
        tracking_label="Good Tracking",
        description="AI video generation and editing",
    ),
    AITool(
        id="5",
        name="DALL-E 3",
        category="Image Generation",
        base_url="https://openai.com/dall-e",
        tracking_label="Full Tracking",
        description="OpenAI image generation model",
    ),
    AITool(
        id="6",
        name="Stable Diffusion",
        category="Image Generation",
        base_url="https://stability.ai",
        tracking_label="Good Tracking",
        description="Open-source image generation model",
    ),
)


class ToolCatalog:
    """Resolve tool identifiers (id or name) against the whitelist."""

    def __init__(self, tools: Optional[Iterable[AITool]] = None) -> None:
        self._tools: dict[str, AITool] = {}
        for tool in DEFAULT_TOOLS if tools is None else tools:
            self.register(tool)

    def register(self, tool: AITool) -> None:
        self._tools[tool.id] = tool

    def resolve(self, identifier: str) -> Optional[AITool]:
        if identifier in self._tools:
            return self._tools[identifier]
        needle = identifier.strip().lower()
        for tool in self._tools.values():
            if tool.name.lower() == needle:
                return tool
        return None

    def available_for_project(self, project_id: Optional[str] = None) -> list[AITool]:
        """Approved, active tools usable on ``project_id``."""
        available = []
        for tool in self._tools.values():
            if not (tool.approved and tool.active):
                continue
            if tool.project_availability == "restricted" and project_id not in tool.selected_projects:
                continue
            available.append(tool)
        return available

    def search(
        self,
        query: str = "",
        category: str = "all",
        project_id: Optional[str] = None,
    ) -> list[AITool]:
        needle = query.strip().lower()
        return [
            tool
            for tool in self.available_for_project(project_id)
            if needle in tool.name.lower() and (category == "all" or tool.category == category)
        ]

    @classmethod
    def from_config(cls, extra: Iterable[dict[str, Any]]) -> "ToolCatalog":
        catalog = cls()
        for raw in extra:
            if isinstance(raw, dict) and (raw.get("id") or raw.get("name")):
                catalog.register(AITool.from_dict(raw))
        return catalog
